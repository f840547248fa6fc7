"""FX resolution for channel price conversion.

Rates are quoted as target units per 1 base unit. Live rates are cached per
process for the configuration's price update window; daily rates are pinned
to the first rate seen on the hotel-local day and shared across workers via
`fx_daily_snapshots`.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pymongo.errors import DuplicateKeyError

from otasync import config
from otasync.constants.channels import PRICE_UPDATE_TTL_S
from otasync.errors import FxUnavailableError
from otasync.metrics import track_fx_lookup
from otasync.services.channel_config_service import channel_currency, currency_setting
from otasync.services.rate_transform import CurrencyPlan, currency_decimals, to_decimal
from otasync.utils import now_utc

logger = logging.getLogger(__name__)


class FxProvider(Protocol):
  async def fetch_rate(self, base: str, quote: str) -> Decimal:
    ...


class HttpFxProvider:
  """exchangerate.host-compatible `GET /latest?base=..&symbols=..`."""

  def __init__(self, base_url: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
    self.base_url = (base_url or config.FX_API_URL).rstrip("/")
    self.timeout_s = timeout_s or config.FX_TIMEOUT_SECONDS

  async def fetch_rate(self, base: str, quote: str) -> Decimal:
    url = f"{self.base_url}/latest"
    try:
      async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s)) as client:
        resp = await client.get(url, params={"base": base, "symbols": quote})
    except httpx.HTTPError as e:
      raise FxUnavailableError(base, quote, f"request failed: {e.__class__.__name__}")

    if resp.status_code != 200:
      raise FxUnavailableError(base, quote, f"HTTP {resp.status_code}")
    try:
      data = resp.json()
      rate = (data.get("rates") or {}).get(quote)
    except (ValueError, AttributeError):
      raise FxUnavailableError(base, quote, "malformed response")
    if rate is None:
      raise FxUnavailableError(base, quote, "quote missing from response")
    value = to_decimal(rate)
    if value <= 0:
      raise FxUnavailableError(base, quote, "non-positive rate")
    return value


def hotel_local_day(tz_name: Optional[str], at: Optional[datetime] = None) -> str:
  at = at or now_utc()
  try:
    tz = ZoneInfo(tz_name or "UTC")
  except (ZoneInfoNotFoundError, ValueError):
    tz = ZoneInfo("UTC")
  return at.astimezone(tz).date().isoformat()


class FXService:
  def __init__(
    self,
    provider: Optional[FxProvider] = None,
    *,
    db=None,
    default_ttl_s: Optional[int] = None,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self.provider = provider or HttpFxProvider()
    self.db = db
    self.default_ttl_s = config.FX_DEFAULT_TTL_S if default_ttl_s is None else default_ttl_s
    self._clock = clock
    self._cache: Dict[Tuple[str, ...], Tuple[float, Decimal]] = {}

  def clear(self) -> None:
    self._cache.clear()

  def _ttl_for(self, frequency: Optional[str]) -> int:
    return PRICE_UPDATE_TTL_S.get(frequency or "", self.default_ttl_s)

  def _cached(self, key: Tuple[str, ...]) -> Optional[Decimal]:
    hit = self._cache.get(key)
    if hit and hit[0] > self._clock():
      track_fx_lookup(True)
      return hit[1]
    return None

  def _store(self, key: Tuple[str, ...], rate: Decimal, ttl_s: int) -> None:
    self._cache[key] = (self._clock() + ttl_s, rate)

  async def live_rate(self, base: str, quote: str, *, frequency: Optional[str] = None) -> Decimal:
    key = ("live", base, quote)
    hit = self._cached(key)
    if hit is not None:
      return hit
    track_fx_lookup(False)
    rate = await self.provider.fetch_rate(base, quote)
    self._store(key, rate, self._ttl_for(frequency))
    return rate

  async def daily_rate(self, base: str, quote: str, *, tz_name: Optional[str] = None) -> Decimal:
    day = hotel_local_day(tz_name)
    key = ("daily", base, quote, day)
    hit = self._cached(key)
    if hit is not None:
      return hit
    track_fx_lookup(False)

    if self.db is not None:
      snap = await self.db.fx_daily_snapshots.find_one({"base": base, "quote": quote, "day": day})
      if snap:
        rate = to_decimal(snap["rate"])
        self._store(key, rate, 86400)
        return rate

    rate = await self.provider.fetch_rate(base, quote)
    if self.db is not None:
      try:
        await self.db.fx_daily_snapshots.insert_one(
          {"base": base, "quote": quote, "day": day, "rate": str(rate), "created_at": now_utc()}
        )
      except DuplicateKeyError:
        # Another worker pinned the day first; use its rate.
        snap = await self.db.fx_daily_snapshots.find_one({"base": base, "quote": quote, "day": day})
        if snap:
          rate = to_decimal(snap["rate"])
    self._store(key, rate, 86400)
    return rate

  async def rate_for(self, cfg: Dict[str, Any], target: str) -> Decimal:
    currencies = cfg.get("currencies") or {}
    base = currencies.get("base_currency") or target
    if base == target:
      return Decimal("1")

    setting = currency_setting(cfg, target)
    if setting is None:
      raise FxUnavailableError(base, target, "target currency is not an active supported currency")

    method = setting.get("conversion_method") or "live_rate"
    if method == "fixed_rate":
      fixed = setting.get("fixed_rate")
      if not fixed or to_decimal(fixed) <= 0:
        raise FxUnavailableError(base, target, "fixed_rate missing")
      return to_decimal(fixed)
    if method == "daily_rate":
      return await self.daily_rate(base, target, tz_name=currencies.get("timezone"))
    return await self.live_rate(base, target, frequency=currencies.get("price_update_frequency"))

  async def currency_plan(self, cfg: Dict[str, Any]) -> CurrencyPlan:
    """Conversion snapshot used by compute_channel_rate for this configuration."""

    currencies = cfg.get("currencies") or {}
    base = currencies.get("base_currency") or ""
    target = channel_currency(cfg)
    rate = await self.rate_for(cfg, target)
    setting = currency_setting(cfg, target) or {}
    return CurrencyPlan(
      base_currency=base,
      target_currency=target,
      fx_rate=rate,
      markup=to_decimal(setting.get("markup") or 0),
      rounding=setting.get("rounding") or "nearest",
      decimals=currency_decimals(target, setting.get("decimals")),
    )


_fx_service: Optional[FXService] = None


def get_fx_service() -> FXService:
  global _fx_service
  if _fx_service is None:
    _fx_service = FXService()
  return _fx_service


def set_fx_service(service: Optional[FXService]) -> None:
  global _fx_service
  _fx_service = service
