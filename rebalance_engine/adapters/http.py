"""
HTTP destination adapter.

Talks to a venue gateway exposing one JSON resource per destination:
- GET  {base}/destinations/{id}/market   -> {"rate", "liquidity", "utilization"}
- POST {base}/destinations/{id}/deposit  {"amount"}
- POST {base}/destinations/{id}/withdraw {"amount"}

Handles:
- Retry/backoff for transient errors (429, 5xx, timeouts, connection errors)
- API key header, never logged
"""

import asyncio
import time
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from pydantic import SecretStr

from rebalance_engine.adapters.base import AdapterError, DestinationAdapter
from rebalance_engine.domain import MarketMetrics
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class HttpDestination(DestinationAdapter):
    """Destination adapter backed by the venue gateway."""

    def __init__(
        self,
        destination: str,
        base_url: str,
        api_key: SecretStr | None = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base_s: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(destination)
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff_base_s = backoff_base_s
        self._client = client
        self._owns_client = client is None
        self._last_metrics: MarketMetrics | None = None
        self._last_latency_ms = 0

    @property
    def metrics(self) -> dict[str, Any]:
        return {"last_request_latency_ms": self._last_latency_ms}

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key is not None:
            headers["X-API-KEY"] = self._api_key.get_secret_value()
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        action: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Make a request to the gateway with retries on transient failures.

        Raises:
            AdapterError: Non-retryable rejection, or retries exhausted
        """
        url = f"{self._base_url}/destinations/{self.destination}/{action}"
        last_error: str | None = None

        for attempt in range(self._max_retries + 1):
            backoff = self._backoff_base_s * (2 ** attempt)
            try:
                client = await self._get_client()
                start_time = time.perf_counter()
                response = await client.request(
                    method, url, headers=self._headers(), json=json_body
                )
                self._last_latency_ms = int((time.perf_counter() - start_time) * 1000)

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "%s %s returned %d, backing off %.1fs (attempt %d/%d)",
                        self.destination,
                        action,
                        response.status_code,
                        backoff,
                        attempt + 1,
                        self._max_retries + 1,
                    )
                    await asyncio.sleep(backoff)
                    continue

                if response.status_code >= 400:
                    raise AdapterError(
                        self.destination,
                        f"{action} rejected: HTTP {response.status_code} {response.text[:200]}",
                    )

                return response

            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning(
                    "%s %s timed out, backing off %.1fs (attempt %d/%d)",
                    self.destination,
                    action,
                    backoff,
                    attempt + 1,
                    self._max_retries + 1,
                )
                await asyncio.sleep(backoff)
            except httpx.RequestError as e:
                last_error = str(e)
                logger.warning(
                    "%s %s request error: %s (attempt %d/%d)",
                    self.destination,
                    action,
                    e,
                    attempt + 1,
                    self._max_retries + 1,
                )
                await asyncio.sleep(backoff)

        raise AdapterError(
            self.destination,
            f"{action} failed after {self._max_retries + 1} attempts: {last_error}",
        )

    async def _fetch_market(self) -> dict[str, Any]:
        response = await self._request("GET", "market")
        try:
            data = response.json()
            self._last_metrics = MarketMetrics(
                liquidity=Decimal(str(data["liquidity"])),
                utilization=Decimal(str(data["utilization"])),
            )
            return data
        except (ValueError, KeyError, InvalidOperation) as e:
            raise AdapterError(self.destination, f"malformed market response: {e}") from e

    async def deposit(self, amount: Decimal) -> None:
        await self._request("POST", "deposit", {"amount": str(amount)})

    async def withdraw(self, amount: Decimal) -> None:
        await self._request("POST", "withdraw", {"amount": str(amount)})

    async def current_rate(self) -> Decimal:
        data = await self._fetch_market()
        try:
            rate = Decimal(str(data["rate"]))
        except (KeyError, InvalidOperation) as e:
            raise AdapterError(self.destination, f"malformed rate: {e}") from e
        if not rate.is_finite():
            raise AdapterError(self.destination, f"malformed rate: {rate} is not finite")
        return rate

    async def market_metrics(self) -> MarketMetrics | None:
        # Populated by the preceding current_rate() call within quote()
        return self._last_metrics
