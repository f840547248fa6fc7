from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence
from urllib.parse import urljoin

import httpx

from otasync.errors import SyncErrorCode
from otasync.services.channels.types import AdapterContext, AdapterResult

logger = logging.getLogger("otasync.channels")

USER_AGENT = "OtaSync-ChannelHub/1.0"


def chunked(items: Sequence[Any], size: int) -> Iterator[List[Any]]:
  size = max(int(size or 1), 1)
  for i in range(0, len(items), size):
    yield list(items[i:i + size])


def _retry_after_ms(resp: httpx.Response) -> Optional[int]:
  raw = resp.headers.get("Retry-After")
  if not raw:
    return None
  try:
    return int(float(raw) * 1000)
  except ValueError:
    return None


class BaseChannelAdapter(ABC):
  """Base interface for outbound channel adapters.

  Every capability returns an AdapterResult and never raises for
  channel-side problems. Capabilities a channel does not offer keep the
  default implementation, which reports `skipped` with `not_supported`.
  Adapters never retry; retry and backoff belong to the dispatcher.
  """

  channel_name: str = "base"
  default_base_url: str = ""

  # --- capabilities -------------------------------------------------------

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("push_rates")

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("push_availability")

  async def push_restrictions(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("push_restrictions")

  async def push_content(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("push_content")

  async def push_booking_modification(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("push_booking_modification")

  async def push_cancellation(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("push_cancellation")

  async def acknowledge_reservation(self, ctx: AdapterContext, external_reservation: Dict[str, Any]) -> AdapterResult:
    return self._not_supported("acknowledge_reservation")

  @abstractmethod
  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    """Validate credentials/endpoint with a cheap read call."""

    raise NotImplementedError

  # --- helpers ------------------------------------------------------------

  def _not_supported(self, capability: str) -> AdapterResult:
    return AdapterResult.skip(
      SyncErrorCode.NOT_SUPPORTED.value,
      f"{self.channel_name} does not support {capability}",
    )

  def _base_url(self, ctx: AdapterContext) -> str:
    base_url = (
      ctx.endpoints.get("base_url")
      or ctx.credentials.get("endpoint")
      or self.default_base_url
    )
    base_url = str(base_url or "").strip()
    if base_url and not base_url.endswith("/"):
      base_url = base_url + "/"
    return base_url

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    return {}

  def _missing_credentials(self, ctx: AdapterContext, *keys: str) -> Optional[AdapterResult]:
    missing = [k for k in keys if not str(ctx.credentials.get(k) or "").strip()]
    if not missing:
      return None
    return AdapterResult.failure(
      SyncErrorCode.AUTH_FAILED.value,
      f"{self.channel_name} credentials missing: {', '.join(missing)}",
      retryable=False,
      context={"channel": self.channel_name, "missing": missing},
    )

  def _body_error(self, resp: httpx.Response) -> Optional[str]:
    """Return a rejection message for 2xx responses that still carry errors."""

    return None

  def _parse_body(self, resp: httpx.Response) -> Dict[str, Any]:
    try:
      data = resp.json()
    except ValueError:
      return {"raw": resp.text[:2000]} if resp.text else {}
    return data if isinstance(data, dict) else {"data": data}

  async def _send(
    self,
    ctx: AdapterContext,
    method: str,
    path: str,
    *,
    json: Optional[Dict[str, Any]] = None,
    content: Optional[str] = None,
    content_type: str = "application/json",
  ) -> AdapterResult:
    base_url = self._base_url(ctx)
    if not base_url:
      return AdapterResult.failure(
        SyncErrorCode.VALIDATION_FAILED.value,
        f"{self.channel_name} base_url is not configured",
        retryable=False,
        context={"channel": self.channel_name},
      )

    url = urljoin(base_url, path.lstrip("/"))
    headers = {
      "Accept": "application/json" if content_type == "application/json" else content_type,
      "User-Agent": USER_AGENT,
      **self._auth_headers(ctx),
    }
    if json is not None or content is not None:
      headers["Content-Type"] = content_type
    if ctx.correlation_id:
      headers["X-Correlation-Id"] = ctx.correlation_id

    started = time.perf_counter()
    try:
      async with httpx.AsyncClient(timeout=httpx.Timeout(ctx.timeout_s)) as client:
        resp = await client.request(method, url, headers=headers, json=json, content=content)
    except httpx.TimeoutException:
      latency_ms = int((time.perf_counter() - started) * 1000)
      return AdapterResult.failure(
        SyncErrorCode.NETWORK_TIMEOUT.value,
        f"{self.channel_name} request timed out",
        retryable=True,
        latency_ms=latency_ms,
        context={"endpoint": url},
      )
    except httpx.RequestError as e:
      latency_ms = int((time.perf_counter() - started) * 1000)
      return AdapterResult.failure(
        SyncErrorCode.PROVIDER_UNAVAILABLE.value,
        f"{self.channel_name} unreachable: {str(e) or 'request error'}",
        retryable=True,
        latency_ms=latency_ms,
        context={"endpoint": url},
      )

    latency_ms = int((time.perf_counter() - started) * 1000)
    status = resp.status_code
    meta = {"endpoint": url, "status_code": status}

    if status in (401, 403):
      return AdapterResult.failure(
        SyncErrorCode.AUTH_FAILED.value,
        f"{self.channel_name} rejected credentials (HTTP {status})",
        retryable=False,
        latency_ms=latency_ms,
        context=meta,
      )

    if status == 429:
      return AdapterResult.failure(
        SyncErrorCode.RATE_LIMITED.value,
        f"{self.channel_name} rate limit exceeded",
        retryable=True,
        latency_ms=latency_ms,
        retry_after_ms=_retry_after_ms(resp),
        context=meta,
      )

    if 500 <= status <= 599:
      return AdapterResult.failure(
        SyncErrorCode.PROVIDER_UNAVAILABLE.value,
        f"{self.channel_name} temporarily unavailable (HTTP {status})",
        retryable=True,
        latency_ms=latency_ms,
        retry_after_ms=_retry_after_ms(resp),
        context=meta,
      )

    if 200 <= status <= 299:
      rejection = self._body_error(resp)
      if rejection:
        return AdapterResult.failure(
          SyncErrorCode.VALIDATION_FAILED.value,
          rejection,
          retryable=False,
          latency_ms=latency_ms,
          context=meta,
        )
      return AdapterResult.success(self._parse_body(resp), latency_ms=latency_ms)

    # Remaining 4xx: the channel refused the payload itself.
    return AdapterResult.failure(
      SyncErrorCode.VALIDATION_FAILED.value,
      f"{self.channel_name} rejected payload (HTTP {status})",
      retryable=False,
      latency_ms=latency_ms,
      context={**meta, "body": resp.text[:500]},
    )

  async def _send_chunks(
    self,
    ctx: AdapterContext,
    items: Sequence[Any],
    build_and_send,
  ) -> AdapterResult:
    """Send `items` in `ctx.batch_size` chunks, stopping at the first failure.

    `build_and_send(chunk)` must return an awaitable AdapterResult.
    """

    total_latency = 0
    requests = 0
    last: Optional[AdapterResult] = None
    for chunk in chunked(items, ctx.batch_size):
      if ctx.cancelled:
        return AdapterResult.failure(
          SyncErrorCode.CANCELLED.value,
          "cancelled between batches",
          retryable=False,
          latency_ms=total_latency,
          context={"requests_sent": requests},
        )
      last = await build_and_send(chunk)
      total_latency += last.latency_ms
      requests += 1
      if not last.ok:
        last.latency_ms = total_latency
        if last.error is not None:
          last.error.context.setdefault("requests_sent", requests - 1)
        return last

    response = dict(last.response or {}) if last else {}
    response["requests"] = requests
    response["items"] = len(items)
    return AdapterResult.success(response, latency_ms=total_latency)
