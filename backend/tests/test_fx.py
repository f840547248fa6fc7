from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import respx
from httpx import Response

from otasync.errors import FxUnavailableError
from otasync.services.fx import FXService, HttpFxProvider, hotel_local_day

FX_URL = "https://fx.example.test"


class CountingProvider:
    def __init__(self, rate: str):
        self.rate = Decimal(rate)
        self.calls = 0

    async def fetch_rate(self, base, quote):
        self.calls += 1
        return self.rate


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


def _cfg(method: str, **setting) -> dict:
    return {
        "channel": "expedia",
        "currencies": {
            "base_currency": "JPY",
            "channel_currency": "USD",
            "price_update_frequency": "hourly",
            "timezone": "Asia/Tokyo",
            "supported_currencies": [
                {"currency_code": "JPY", "conversion_method": "fixed_rate", "fixed_rate": 1},
                {"currency_code": "USD", "conversion_method": method, **setting},
            ],
        },
    }


@pytest.mark.anyio
async def test_http_provider_reads_quote_from_latest():
    provider = HttpFxProvider(FX_URL)

    with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{FX_URL}/latest").respond(200, json={"base": "JPY", "rates": {"USD": 0.0067}})
        rate = await provider.fetch_rate("JPY", "USD")

    assert rate == Decimal("0.0067")
    assert route.calls.last.request.url.params["symbols"] == "USD"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        Response(503, json={}),
        Response(200, json={"rates": {}}),
        Response(200, json={"rates": {"USD": 0}}),
        Response(200, text="not json"),
    ],
)
async def test_http_provider_failures_raise_fx_unavailable(response):
    provider = HttpFxProvider(FX_URL)

    with respx.mock(assert_all_called=True) as router:
        router.get(f"{FX_URL}/latest").mock(return_value=response)
        with pytest.raises(FxUnavailableError) as exc:
            await provider.fetch_rate("JPY", "USD")

    assert exc.value.base == "JPY"
    assert exc.value.quote == "USD"


@pytest.mark.anyio
async def test_live_rate_is_cached_for_the_update_window():
    provider = CountingProvider("0.0067")
    clock = FakeMonotonic()
    fx = FXService(provider, clock=clock)

    assert await fx.rate_for(_cfg("live_rate"), "USD") == Decimal("0.0067")
    assert await fx.rate_for(_cfg("live_rate"), "USD") == Decimal("0.0067")
    assert provider.calls == 1

    clock.value += 3601
    await fx.rate_for(_cfg("live_rate"), "USD")
    assert provider.calls == 2


@pytest.mark.anyio
async def test_daily_rate_is_pinned_for_the_hotel_day(test_db):
    first = FXService(CountingProvider("0.0067"), db=test_db)
    assert await first.rate_for(_cfg("daily_rate"), "USD") == Decimal("0.0067")

    # Fresh process, the provider moved: the day's snapshot still wins.
    later_provider = CountingProvider("0.0070")
    second = FXService(later_provider, db=test_db)
    assert await second.rate_for(_cfg("daily_rate"), "USD") == Decimal("0.0067")
    assert later_provider.calls == 0

    snap = await test_db.fx_daily_snapshots.find_one({"base": "JPY", "quote": "USD"})
    assert snap["day"] == hotel_local_day("Asia/Tokyo")


@pytest.mark.anyio
async def test_fixed_and_identity_rates_need_no_provider():
    provider = CountingProvider("9")
    fx = FXService(provider)

    assert await fx.rate_for(_cfg("fixed_rate", fixed_rate=0.0065), "USD") == Decimal("0.0065")
    assert await fx.rate_for(_cfg("fixed_rate", fixed_rate=0.0065), "JPY") == Decimal("1")
    assert provider.calls == 0


@pytest.mark.anyio
async def test_unsupported_target_currency_is_unavailable():
    fx = FXService(CountingProvider("1"))

    with pytest.raises(FxUnavailableError):
        await fx.rate_for(_cfg("fixed_rate", fixed_rate=0.0065), "EUR")


@pytest.mark.anyio
async def test_currency_plan_carries_markup_rounding_and_decimals():
    fx = FXService(CountingProvider("1"))

    plan = await fx.currency_plan(_cfg("fixed_rate", fixed_rate=0.0065, markup=5, rounding="up"))

    assert plan.base_currency == "JPY"
    assert plan.target_currency == "USD"
    assert plan.fx_rate == Decimal("0.0065")
    assert plan.markup == Decimal("5")
    assert plan.rounding == "up"
    assert plan.decimals == 2


def test_hotel_local_day_uses_the_hotel_timezone():
    at = datetime(2026, 12, 31, 20, 0, tzinfo=timezone.utc)

    assert hotel_local_day("Asia/Tokyo", at) == "2027-01-01"
    assert hotel_local_day("UTC", at) == "2026-12-31"
    assert hotel_local_day("Not/AZone", at) == "2026-12-31"
