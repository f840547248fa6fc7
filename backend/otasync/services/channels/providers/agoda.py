from __future__ import annotations

from typing import Any, Dict, List, Optional

from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.types import AdapterContext, AdapterResult


class AgodaAdapter(BaseChannelAdapter):
  """Agoda YCS JSON adapter authenticated with an X-API-Key header."""

  channel_name = "agoda"
  default_base_url = "https://supply.agoda.com/api/"

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    return {"X-API-Key": str(ctx.credentials.get("api_key") or "")}

  def _check(self, ctx: AdapterContext) -> Optional[AdapterResult]:
    return self._missing_credentials(ctx, "api_key", "hotel_id")

  def _hotel(self, ctx: AdapterContext) -> str:
    return str(ctx.credentials.get("hotel_id") or "")

  def _ari_items(self, payload: Dict[str, Any], *, with_rates: bool) -> List[Dict[str, Any]]:
    room = payload.get("channel_room_id")
    items: List[Dict[str, Any]] = []
    for plan in payload.get("rate_plans") or []:
      for night in plan.get("nights") or []:
        item: Dict[str, Any] = {
          "room_id": room,
          "rateplan_id": plan.get("channel_rate_plan_id"),
          "date": night["date"],
        }
        if with_rates:
          item["rate"] = str(night["rate"])
        else:
          for src, dst in (
            ("stop_sell", "closed"),
            ("closed_to_arrival", "cta"),
            ("closed_to_departure", "ctd"),
            ("min_stay", "min_los"),
            ("max_stay", "max_los"),
          ):
            if night.get(src) is not None:
              item[dst] = night[src]
        items.append(item)
    return items

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    currency = payload.get("currency") or ctx.currency
    items = self._ari_items(payload, with_rates=True)

    async def send(chunk):
      return await self._send(ctx, "POST", f"hotels/{self._hotel(ctx)}/ari", json={"currency": currency, "items": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    items = [
      {"room_id": room, "date": n["date"], "allotment": int(n["available"])}
      for n in payload.get("nights") or []
    ]

    async def send(chunk):
      return await self._send(ctx, "POST", f"hotels/{self._hotel(ctx)}/ari", json={"items": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_restrictions(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    items = self._ari_items(payload, with_rates=False)

    async def send(chunk):
      return await self._send(ctx, "POST", f"hotels/{self._hotel(ctx)}/ari", json={"items": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_content(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    body = {
      "language": payload.get("channel_language") or payload.get("language"),
      "room_name": payload.get("name"),
      "description": payload.get("description"),
      "images": list(payload.get("images") or []),
    }
    return await self._send(ctx, "PUT", f"hotels/{self._hotel(ctx)}/rooms/{room}/content", json=body)

  async def push_cancellation(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = payload.get("external_reservation_ref")
    return await self._send(ctx, "POST", f"hotels/{self._hotel(ctx)}/bookings/{ref}/cancel", json={})

  async def acknowledge_reservation(self, ctx: AdapterContext, external_reservation: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = external_reservation.get("external_reservation_ref")
    return await self._send(ctx, "POST", f"hotels/{self._hotel(ctx)}/bookings/{ref}/confirm", json={})

  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "GET", f"hotels/{self._hotel(ctx)}")
