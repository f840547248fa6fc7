from __future__ import annotations

from typing import Any, Dict, Optional

from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.types import AdapterContext, AdapterResult


class DirectWebAdapter(BaseChannelAdapter):
  """Hotel's own booking engine. Receives the internal payload shape as-is.

  There is no default endpoint; `integration.endpoints.base_url` must be set.
  """

  channel_name = "direct_web"

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    return {"X-API-Key": str(ctx.credentials.get("api_key") or "")}

  def _check(self, ctx: AdapterContext) -> Optional[AdapterResult]:
    return self._missing_credentials(ctx, "api_key")

  async def _post(self, ctx: AdapterContext, path: str, body: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "POST", path, json={"hotel_id": ctx.hotel_id, **body})

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/rates", payload)

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/availability", payload)

  async def push_restrictions(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/restrictions", payload)

  async def push_content(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/content", payload)

  async def push_booking_modification(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/bookings/modify", payload)

  async def push_cancellation(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/bookings/cancel", payload)

  async def acknowledge_reservation(self, ctx: AdapterContext, external_reservation: Dict[str, Any]) -> AdapterResult:
    return await self._post(ctx, "sync/reservations/ack", external_reservation)

  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "GET", "sync/ping")
