from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class AdapterError:
  """Typed failure carried inside an AdapterResult.

  Adapters never raise for channel-side problems; they translate HTTP codes,
  timeouts and payload rejections into one of the sync error codes.
  """

  code: str
  message: str = ""
  retryable: bool = False
  retry_after_ms: Optional[int] = None
  context: Dict[str, Any] = field(default_factory=dict)

  def to_dict(self) -> Dict[str, Any]:
    out: Dict[str, Any] = {
      "code": self.code,
      "message": self.message,
      "retryable": self.retryable,
      "context": self.context,
    }
    if self.retry_after_ms is not None:
      out["retry_after_ms"] = self.retry_after_ms
    return out


@dataclass
class AdapterResult:
  ok: bool
  response: Optional[Dict[str, Any]] = None
  error: Optional[AdapterError] = None
  latency_ms: int = 0
  # Capability not offered by the channel, or nothing to send: recorded as
  # `skipped`, never as a failure.
  skipped: bool = False

  @classmethod
  def success(cls, response: Optional[Dict[str, Any]] = None, latency_ms: int = 0) -> "AdapterResult":
    return cls(ok=True, response=response or {}, latency_ms=latency_ms)

  @classmethod
  def failure(
    cls,
    code: str,
    message: str,
    *,
    retryable: bool,
    latency_ms: int = 0,
    retry_after_ms: Optional[int] = None,
    context: Optional[Dict[str, Any]] = None,
  ) -> "AdapterResult":
    return cls(
      ok=False,
      error=AdapterError(
        code=code,
        message=message,
        retryable=retryable,
        retry_after_ms=retry_after_ms,
        context=context or {},
      ),
      latency_ms=latency_ms,
    )

  @classmethod
  def skip(cls, code: str, message: str = "") -> "AdapterResult":
    return cls(ok=True, skipped=True, error=AdapterError(code=code, message=message, retryable=False))


@dataclass
class AdapterContext:
  """Everything an adapter needs for one call to one channel."""

  hotel_id: str
  channel: str
  credentials: Dict[str, Any] = field(default_factory=dict)
  endpoints: Dict[str, str] = field(default_factory=dict)
  language: str = "EN"
  channel_language: Optional[str] = None
  currency: str = "USD"
  timeout_ms: int = 30_000
  batch_size: int = 100
  event_id: Optional[str] = None
  correlation_id: Optional[str] = None
  cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

  @property
  def timeout_s(self) -> float:
    return self.timeout_ms / 1000.0

  @property
  def cancelled(self) -> bool:
    return self.cancel_event.is_set()
