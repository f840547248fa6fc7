from __future__ import annotations

from typing import Any, Dict, Optional

from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.types import AdapterContext, AdapterResult


class AirbnbAdapter(BaseChannelAdapter):
  """Airbnb listing calendar adapter.

  Airbnb has no rate-plan level restriction push (stop-sell, CTA/CTD, LOS
  per plan), so push_restrictions keeps the base `not_supported` skip.
  Rates and availability are written to the listing calendar; the mapped
  channel room id is the listing id.
  """

  channel_name = "airbnb"
  default_base_url = "https://api.airbnb.com/v2/"

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    return {
      "Authorization": f"Bearer {ctx.credentials.get('access_token') or ''}",
      "X-Airbnb-API-Key": str(ctx.credentials.get("api_key") or ""),
    }

  def _check(self, ctx: AdapterContext) -> Optional[AdapterResult]:
    return self._missing_credentials(ctx, "access_token", "api_key")

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    listing = payload.get("channel_room_id")
    currency = payload.get("currency") or ctx.currency
    # A listing has one nightly price; the first mapped plan wins per date.
    nightly: Dict[str, Dict[str, Any]] = {}
    for plan in payload.get("rate_plans") or []:
      for night in plan.get("nights") or []:
        nightly.setdefault(night["date"], {"date": night["date"], "daily_price": str(night["rate"])})
    days = list(nightly.values())

    async def send(chunk):
      return await self._send(
        ctx,
        "PUT",
        f"calendars/{listing}",
        json={"currency": currency, "operations": chunk},
      )

    return await self._send_chunks(ctx, days, send)

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    listing = payload.get("channel_room_id")
    days = [
      {"date": n["date"], "availability": "available" if int(n["available"]) > 0 else "unavailable"}
      for n in payload.get("nights") or []
    ]

    async def send(chunk):
      return await self._send(ctx, "PUT", f"calendars/{listing}", json={"operations": chunk})

    return await self._send_chunks(ctx, days, send)

  async def push_content(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    listing = payload.get("channel_room_id")
    body = {
      "locale": (payload.get("channel_language") or payload.get("language") or "").lower(),
      "name": payload.get("name"),
      "description": payload.get("description"),
      "photos": [{"url": url} for url in payload.get("images") or []],
    }
    return await self._send(ctx, "PUT", f"listings/{listing}/descriptions", json=body)

  async def push_cancellation(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = payload.get("external_reservation_ref")
    return await self._send(ctx, "POST", f"reservations/{ref}/cancel", json={"reason": payload.get("reason") or "host_cancelled"})

  async def acknowledge_reservation(self, ctx: AdapterContext, external_reservation: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    ref = external_reservation.get("external_reservation_ref")
    return await self._send(ctx, "POST", f"reservations/{ref}/accept", json={})

  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "GET", "users/me")
