"""
Tests for the HTTP destination adapter with mocked gateway responses.
"""

import json
from decimal import Decimal

import httpx
import pytest
import respx
from httpx import Response
from pydantic import SecretStr

from rebalance_engine.adapters import (
    AdapterError,
    AdapterRegistry,
    HttpDestination,
    SimulatedDestination,
)
from rebalance_engine.orchestrator import QuoteFetcher

BASE_URL = "https://venue.test/api"
MARKET_URL = f"{BASE_URL}/destinations/A/market"
DEPOSIT_URL = f"{BASE_URL}/destinations/A/deposit"
WITHDRAW_URL = f"{BASE_URL}/destinations/A/withdraw"

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def venue() -> HttpDestination:
    """Adapter with one retry and no backoff delay."""
    return HttpDestination(
        "A",
        base_url=BASE_URL + "/",
        api_key=SecretStr("test-api-key"),
        timeout=5,
        max_retries=1,
        backoff_base_s=0,
    )


def market_body(rate: str = "5.25") -> dict:
    return {"rate": rate, "liquidity": "2500000", "utilization": "0.61"}


# =============================================================================
# Quotes
# =============================================================================


class TestQuote:
    """Tests for rate and market metric reads."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_quote_from_market_resource(self, venue: HttpDestination) -> None:
        route = respx.get(MARKET_URL).mock(return_value=Response(200, json=market_body()))

        quote = await venue.quote()

        assert route.called
        assert route.calls.last.request.headers["X-API-KEY"] == "test-api-key"
        assert quote.destination == "A"
        assert quote.rate == Decimal("5.25")
        assert quote.liquidity == Decimal("2500000")
        assert quote.utilization == Decimal("0.61")
        await venue.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_malformed_market_response(self, venue: HttpDestination) -> None:
        respx.get(MARKET_URL).mock(return_value=Response(200, json={"rate": "5.0"}))

        with pytest.raises(AdapterError, match="malformed"):
            await venue.current_rate()
        await venue.close()

    @pytest.mark.parametrize("rate", ["NaN", "Infinity", "-Infinity"])
    @respx.mock
    @pytest.mark.asyncio
    async def test_non_finite_rate_rejected(self, venue: HttpDestination, rate: str) -> None:
        respx.get(MARKET_URL).mock(return_value=Response(200, json=market_body(rate)))

        with pytest.raises(AdapterError, match="not finite"):
            await venue.current_rate()
        await venue.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_non_finite_rate_yields_no_quote(self, venue: HttpDestination) -> None:
        respx.get(MARKET_URL).mock(return_value=Response(200, json=market_body("NaN")))
        fetcher = QuoteFetcher(
            AdapterRegistry([venue, SimulatedDestination("B", rate="5.0")]), timeout_s=1.0
        )

        quotes = await fetcher.fetch(["A", "B"])

        assert [q.destination for q in quotes] == ["B"]
        await venue.close()


# =============================================================================
# Fund movements
# =============================================================================


class TestFundMovements:
    """Tests for deposit and withdraw calls."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_deposit_posts_amount(self, venue: HttpDestination) -> None:
        route = respx.post(DEPOSIT_URL).mock(return_value=Response(200, json={"ok": True}))

        await venue.deposit(Decimal("1000.50"))

        assert json.loads(route.calls.last.request.content) == {"amount": "1000.50"}
        await venue.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_withdraw_rejected(self, venue: HttpDestination) -> None:
        route = respx.post(WITHDRAW_URL).mock(
            return_value=Response(409, json={"error": "insufficient liquidity"})
        )

        with pytest.raises(AdapterError, match="HTTP 409"):
            await venue.withdraw(Decimal("10"))
        # Client errors are not retried
        assert route.call_count == 1
        await venue.close()


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    """Tests for transient failure handling."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_retried(self, venue: HttpDestination) -> None:
        route = respx.post(DEPOSIT_URL).mock(
            side_effect=[Response(503), Response(200, json={"ok": True})]
        )

        await venue.deposit(Decimal("5"))

        assert route.call_count == 2
        await venue.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self, venue: HttpDestination) -> None:
        route = respx.get(MARKET_URL).mock(return_value=Response(429))

        with pytest.raises(AdapterError, match="failed after 2 attempts"):
            await venue.current_rate()
        assert route.call_count == 2
        await venue.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_connection_error_retried(self, venue: HttpDestination) -> None:
        route = respx.get(MARKET_URL).mock(
            side_effect=[httpx.ConnectError("refused"), Response(200, json=market_body("4.1"))]
        )

        assert await venue.current_rate() == Decimal("4.1")
        assert route.call_count == 2
        await venue.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_timeout_reported_as_adapter_error(self, venue: HttpDestination) -> None:
        respx.get(MARKET_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

        with pytest.raises(AdapterError, match="timeout"):
            await venue.current_rate()
        await venue.close()
