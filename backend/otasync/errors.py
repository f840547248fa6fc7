from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass
class AppError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details or {},
        }
        if self.retryable is not None:
            payload["retryable"] = self.retryable
        return {"error": payload}


class SyncErrorCode(str, Enum):
    """Error kinds recorded on events and per-channel results."""

    MAPPING_MISSING = "mapping_missing"
    CHANNEL_DISABLED = "channel_disabled"
    VALIDATION_FAILED = "validation_failed"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    NETWORK_TIMEOUT = "network_timeout"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    FX_UNAVAILABLE = "fx_unavailable"
    MISSING_TRANSLATION = "missing_translation"
    NOT_SUPPORTED = "not_supported"
    CANCELLED = "cancelled"
    LEASE_EXPIRED = "lease_expired"
    INTERNAL = "internal"


# Codes a per-channel call may be retried on. `internal` is retryable exactly
# once; the dispatcher enforces that limit.
RETRYABLE_CODES = frozenset(
    {
        SyncErrorCode.RATE_LIMITED.value,
        SyncErrorCode.NETWORK_TIMEOUT.value,
        SyncErrorCode.PROVIDER_UNAVAILABLE.value,
        SyncErrorCode.FX_UNAVAILABLE.value,
        SyncErrorCode.INTERNAL.value,
    }
)


class FxUnavailableError(Exception):
    """Raised when no FX rate can be resolved for a conversion."""

    def __init__(self, base: str, quote: str, reason: str = "") -> None:
        self.base = base
        self.quote = quote
        self.reason = reason
        super().__init__(f"FX rate {base}/{quote} unavailable: {reason or 'no rate'}")


class MissingTranslationError(Exception):
    def __init__(self, language: str, field: str = "") -> None:
        self.language = language
        self.field = field
        super().__init__(f"No translation for language '{language}'" + (f" ({field})" if field else ""))


def error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        }
    }
