"""Pure pricing and restriction transforms for channel payloads.

Nothing here touches the database or the network; FX rates arrive already
resolved inside a CurrencyPlan so repeated calls give identical output.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Optional

from otasync.constants.channels import CURRENCY_DECIMALS
from otasync.utils import js_day_of_week, parse_day

ZERO = Decimal("0")
HUNDRED = Decimal("100")

_ROUNDING_MODES = {
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
    "nearest": ROUND_HALF_UP,
}


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def currency_decimals(code: str, override: Optional[int] = None) -> int:
    if override is not None:
        return int(override)
    return CURRENCY_DECIMALS.get((code or "").upper(), 2)


@dataclass(frozen=True)
class CurrencyPlan:
    """Conversion snapshot for one (configuration, target currency)."""

    base_currency: str
    target_currency: str
    fx_rate: Decimal = Decimal("1")  # target units per 1 base unit
    markup: Decimal = ZERO  # percent
    rounding: str = "nearest"
    decimals: int = 2

    @classmethod
    def identity(cls, currency: str) -> "CurrencyPlan":
        return cls(base_currency=currency, target_currency=currency, decimals=currency_decimals(currency))


def apply_modifier(amount: Decimal, modifier: Optional[Dict[str, Any]]) -> Decimal:
    if not modifier:
        return amount
    kind = modifier.get("type")
    value = to_decimal(modifier.get("value", 0))
    if kind == "percentage":
        return amount * (Decimal("1") + value / HUNDRED)
    if kind == "fixed":
        return amount + value
    if kind == "multiplier":
        return amount * value
    raise ValueError(f"unknown modifier type: {kind}")


def round_money(amount: Decimal, policy: str, decimals: int) -> Decimal:
    if policy == "none":
        return amount
    mode = _ROUNDING_MODES.get(policy)
    if mode is None:
        raise ValueError(f"unknown rounding policy: {policy}")
    quantum = Decimal(1).scaleb(-decimals)
    return amount.quantize(quantum, rounding=mode)


def seasonal_modifier(rules: Dict[str, Any], night: Optional[date]) -> Optional[Dict[str, Any]]:
    """First seasonal rule whose inclusive [start_date, end_date] holds `night`."""

    if night is None:
        return None
    for rule in rules.get("seasonal_rules") or []:
        start = parse_day(rule["start_date"])
        end = parse_day(rule["end_date"])
        if start <= night <= end:
            return rule.get("modifier")
    return None


def day_of_week_modifier(rules: Dict[str, Any], day_of_week: Optional[int]) -> Optional[Dict[str, Any]]:
    if day_of_week is None:
        return None
    for rule in rules.get("day_of_week_pricing") or []:
        if int(rule["day_of_week"]) == int(day_of_week):
            return rule.get("modifier")
    return None


def compute_channel_rate(
    rate_mapping: Dict[str, Any],
    base_rate: Any,
    *,
    night: Optional[Any] = None,
    day_of_week: Optional[int] = None,
    room_rate_modifier: Optional[Dict[str, Any]] = None,
    currency: Optional[CurrencyPlan] = None,
) -> Decimal:
    """Price one night for one channel rate plan.

    Order: base modifier, seasonal rule, day-of-week rule, room mapping
    modifier, FX conversion, target-currency markup, rounding. `day_of_week`
    uses 0 = Sunday and is derived from `night` when not given.
    """

    rules = rate_mapping.get("rules") or {}
    day = parse_day(night) if night is not None else None
    if day_of_week is None and day is not None:
        day_of_week = js_day_of_week(day)

    amount = to_decimal(base_rate)
    amount = apply_modifier(amount, rules.get("base_rate_modifier"))
    amount = apply_modifier(amount, seasonal_modifier(rules, day))
    amount = apply_modifier(amount, day_of_week_modifier(rules, day_of_week))
    amount = apply_modifier(amount, room_rate_modifier)

    plan = currency or CurrencyPlan.identity("")
    amount = amount * plan.fx_rate
    if plan.markup:
        amount = amount * (Decimal("1") + plan.markup / HUNDRED)
    if amount < ZERO:
        amount = ZERO
    return round_money(amount, plan.rounding, plan.decimals)


def _tighter_min(pms_value: Any, limit: Any) -> Optional[int]:
    values = [int(v) for v in (pms_value, limit) if v is not None]
    return max(values) if values else None


def _tighter_max(pms_value: Any, limit: Any) -> Optional[int]:
    values = [int(v) for v in (pms_value, limit) if v is not None]
    return min(values) if values else None


_CLAMPED_PAIRS = (
    ("min_stay", "max_stay", "min_length_of_stay", "max_length_of_stay"),
    ("min_occupancy", "max_occupancy", "min_occupancy", "max_occupancy"),
    ("min_advance_booking", "max_advance_booking", "min_advance_booking", "max_advance_booking"),
)


def clamp_restrictions(pms: Dict[str, Any], rules: Dict[str, Any]) -> Dict[str, Any]:
    """Intersect PMS restriction values with the rate mapping limits.

    An empty intersection means no stay can satisfy both sides; the night is
    closed instead of sending contradictory limits.
    """

    out = dict(pms)
    for lo_key, hi_key, rule_lo, rule_hi in _CLAMPED_PAIRS:
        lo = _tighter_min(pms.get(lo_key), rules.get(rule_lo))
        hi = _tighter_max(pms.get(hi_key), rules.get(rule_hi))
        if lo is not None:
            out[lo_key] = lo
        if hi is not None:
            out[hi_key] = hi
        if lo is not None and hi is not None and lo > hi:
            out[hi_key] = lo
            out["stop_sell"] = True
    return out


def nightly_rates(
    rate_mapping: Dict[str, Any],
    nights: Iterable[Dict[str, Any]],
    *,
    room_rate_modifier: Optional[Dict[str, Any]] = None,
    currency: Optional[CurrencyPlan] = None,
) -> list[Dict[str, Any]]:
    """Apply compute_channel_rate to `[{date, rate}]` entries."""

    out = []
    for entry in nights:
        amount = compute_channel_rate(
            rate_mapping,
            entry["rate"],
            night=entry["date"],
            room_rate_modifier=room_rate_modifier,
            currency=currency,
        )
        out.append({"date": str(entry["date"])[:10], "rate": format(amount, "f")})
    return out
