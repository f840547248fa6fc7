from __future__ import annotations

from typing import Any, Dict, List, Optional

from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.types import AdapterContext, AdapterResult

# GDS distribution goes through a switch; each GDS keeps its own endpoint.
GDS_BASE_URLS = {
  "amadeus": "https://gds-switch.example.net/amadeus/",
  "sabre": "https://gds-switch.example.net/sabre/",
  "galileo": "https://gds-switch.example.net/galileo/",
  "worldspan": "https://gds-switch.example.net/worldspan/",
}


class GdsAdapter(BaseChannelAdapter):
  """Rates, availability and restrictions for GDS channels.

  GDS listings are identified by chain code + property code. Content and
  reservation messages are managed by the switch and are not pushed from
  here.
  """

  def __init__(self, channel: str) -> None:
    if channel not in GDS_BASE_URLS:
      raise ValueError(f"unknown GDS channel: {channel}")
    self.channel_name = channel
    self.default_base_url = GDS_BASE_URLS[channel]

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    return {
      "X-Switch-User": str(ctx.credentials.get("username") or ""),
      "X-Switch-Password": str(ctx.credentials.get("password") or ""),
    }

  def _check(self, ctx: AdapterContext) -> Optional[AdapterResult]:
    return self._missing_credentials(ctx, "username", "password", "chain_code", "property_code")

  def _property_path(self, ctx: AdapterContext) -> str:
    return f"properties/{ctx.credentials.get('chain_code')}/{ctx.credentials.get('property_code')}"

  async def _push(self, ctx: AdapterContext, kind: str, items: List[Dict[str, Any]], extra: Optional[Dict[str, Any]] = None) -> AdapterResult:
    async def send(chunk):
      return await self._send(ctx, "POST", f"{self._property_path(ctx)}/{kind}", json={**(extra or {}), "messages": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    items = [
      {"room_code": room, "rate_code": plan.get("channel_rate_plan_id"), "date": n["date"], "amount": str(n["rate"])}
      for plan in payload.get("rate_plans") or []
      for n in plan.get("nights") or []
    ]
    return await self._push(ctx, "rates", items, {"currency": payload.get("currency") or ctx.currency})

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    items = [{"room_code": room, "date": n["date"], "count": int(n["available"])} for n in payload.get("nights") or []]
    return await self._push(ctx, "inventory", items)

  async def push_restrictions(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    items = []
    for plan in payload.get("rate_plans") or []:
      for n in plan.get("nights") or []:
        items.append(
          {
            "room_code": room,
            "rate_code": plan.get("channel_rate_plan_id"),
            "date": n["date"],
            **{k: n[k] for k in ("stop_sell", "closed_to_arrival", "closed_to_departure", "min_stay", "max_stay") if n.get(k) is not None},
          }
        )
    return await self._push(ctx, "restrictions", items)

  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "GET", self._property_path(ctx))
