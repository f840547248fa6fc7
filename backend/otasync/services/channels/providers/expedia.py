from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.types import AdapterContext, AdapterResult


class ExpediaAdapter(BaseChannelAdapter):
  """Expedia Partner Central (EQC-style JSON) adapter with bearer auth.

  Availability and restrictions share the same ARI endpoint; rates go to
  the rate plan endpoint. Expedia reports per-item problems in an `errors`
  array even on HTTP 200.
  """

  channel_name = "expedia"
  default_base_url = "https://services.expediapartnercentral.com/"

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    token = str(ctx.credentials.get("api_key") or ctx.credentials.get("access_token") or "")
    return {"Authorization": f"Bearer {token}"}

  def _check(self, ctx: AdapterContext) -> Optional[AdapterResult]:
    if ctx.credentials.get("access_token"):
      return self._missing_credentials(ctx, "property_id")
    return self._missing_credentials(ctx, "api_key", "property_id")

  def _property(self, ctx: AdapterContext) -> str:
    return str(ctx.credentials.get("property_id") or "")

  def _body_error(self, resp: httpx.Response) -> Optional[str]:
    try:
      data = resp.json()
    except ValueError:
      return None
    if not isinstance(data, dict):
      return None
    errors = data.get("errors") or []
    if not errors:
      return None
    messages = [str(e.get("message") or e.get("code") or e) if isinstance(e, dict) else str(e) for e in errors]
    return "; ".join(messages)

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    currency = payload.get("currency") or ctx.currency
    items: List[Dict[str, Any]] = []
    for plan in payload.get("rate_plans") or []:
      for night in plan.get("nights") or []:
        items.append(
          {
            "roomTypeId": room,
            "ratePlanId": plan.get("channel_rate_plan_id"),
            "date": night["date"],
            "amount": str(night["rate"]),
            "currency": currency,
          }
        )

    async def send(chunk):
      return await self._send(ctx, "POST", f"properties/{self._property(ctx)}/rates", json={"rates": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    items = [
      {"roomTypeId": room, "date": n["date"], "totalInventoryAvailable": int(n["available"])}
      for n in payload.get("nights") or []
    ]

    async def send(chunk):
      return await self._send(ctx, "POST", f"properties/{self._property(ctx)}/availability", json={"availability": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_restrictions(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = payload.get("channel_room_id")
    items: List[Dict[str, Any]] = []
    for plan in payload.get("rate_plans") or []:
      for night in plan.get("nights") or []:
        item: Dict[str, Any] = {
          "roomTypeId": room,
          "ratePlanId": plan.get("channel_rate_plan_id"),
          "date": night["date"],
        }
        if night.get("stop_sell") is not None:
          item["closed"] = bool(night["stop_sell"])
        if night.get("closed_to_arrival") is not None:
          item["closedToArrival"] = bool(night["closed_to_arrival"])
        if night.get("closed_to_departure") is not None:
          item["closedToDeparture"] = bool(night["closed_to_departure"])
        if night.get("min_stay") is not None:
          item["minLOS"] = int(night["min_stay"])
        if night.get("max_stay") is not None:
          item["maxLOS"] = int(night["max_stay"])
        items.append(item)

    async def send(chunk):
      return await self._send(ctx, "POST", f"properties/{self._property(ctx)}/restrictions", json={"restrictions": chunk})

    return await self._send_chunks(ctx, items, send)

  async def push_content(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    body = {
      "roomTypeId": payload.get("channel_room_id"),
      "locale": payload.get("channel_language") or payload.get("language"),
      "name": payload.get("name"),
      "description": payload.get("description"),
      "images": [{"url": url} for url in payload.get("images") or []],
      "amenities": payload.get("amenities") or [],
    }
    room = payload.get("channel_room_id")
    return await self._send(ctx, "PUT", f"properties/{self._property(ctx)}/roomTypes/{room}/content", json=body)

  async def push_booking_modification(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = payload.get("external_reservation_ref")
    return await self._send(
      ctx,
      "PATCH",
      f"properties/{self._property(ctx)}/reservations/{ref}",
      json={"changes": payload.get("change_set") or {}},
    )

  async def push_cancellation(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = payload.get("external_reservation_ref")
    return await self._send(
      ctx,
      "POST",
      f"properties/{self._property(ctx)}/reservations/{ref}/cancel",
      json={"reason": payload.get("reason") or "hotel_cancelled"},
    )

  async def acknowledge_reservation(self, ctx: AdapterContext, external_reservation: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = external_reservation.get("external_reservation_ref")
    return await self._send(
      ctx,
      "POST",
      f"properties/{self._property(ctx)}/reservations/{ref}/acknowledge",
      json={"confirmationNumber": external_reservation.get("confirmation_number") or ref},
    )

  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "GET", f"properties/{self._property(ctx)}")


class HotelsComAdapter(ExpediaAdapter):
  """Hotels.com is distributed through the Expedia Group connectivity APIs."""

  channel_name = "hotels_com"
