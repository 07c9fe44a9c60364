"""
Enhanced transaction history (Helius) used as a secondary signature source.

The primary RPC node may prune old signature history; the enhanced API keeps
a longer window. Only signatures are taken from it, full records are always
fetched from the primary RPC.
"""

import asyncio

import httpx

from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.ledger_domain import SignatureInfo
from capsule_service.services.ledger.cancellation import CancellationToken, is_cancelled
from capsule_service.services.ledger.rpc_client import backoff_delay

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30
MAX_RETRIES = 3
BACKOFF_BASE = 2.0
BACKOFF_MAX = 10.0
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class EnhancedHistoryError(Exception):
    """Enhanced history request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EnhancedHistoryClient:
    """Paginated reader for the enhanced transactions endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        backoff_max: float = BACKOFF_MAX,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @classmethod
    def from_settings(cls, settings) -> "EnhancedHistoryClient | None":
        if not settings.enhanced_history_enabled():
            return None
        return cls(
            settings.HELIUS_API_BASE_URL,
            settings.HELIUS_API_KEY,
            timeout=settings.RPC_TIMEOUT,
            backoff_base=settings.RPC_BACKOFF_BASE,
            backoff_max=settings.RPC_BACKOFF_MAX,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, url: str, params: dict) -> httpx.Response:
        """Execute a GET request with retry and backoff."""
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.get(url, params=params)
                if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                    backoff = backoff_delay(attempt, self.backoff_base, self.backoff_max)
                    logger.debug(
                        "Enhanced history retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    raise EnhancedHistoryError(f"Enhanced history request failed: {e}") from e
                backoff = backoff_delay(attempt, self.backoff_base, self.backoff_max)
                logger.debug(
                    "Enhanced history request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Enhanced history retry loop exhausted")

    async def get_page(
        self, address: str, limit: int = 100, before: str | None = None
    ) -> list[SignatureInfo]:
        params = {"api-key": self._api_key, "limit": limit}
        if before:
            params["before"] = before

        response = await self._request_with_retry(f"{self.base_url}/addresses/{address}/transactions", params)
        if not response.is_success:
            raise EnhancedHistoryError(
                f"Enhanced history error (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        try:
            items = response.json()
        except ValueError as e:
            raise EnhancedHistoryError(f"Invalid enhanced history response: {e}") from e

        signatures = []
        for item in items if isinstance(items, list) else []:
            info = SignatureInfo.from_enhanced_item(item)
            if info is not None:
                signatures.append(info)
        return signatures

    async def fetch_all_signatures(
        self,
        address: str,
        page_size: int = 100,
        max_pages: int = 120,
        cancel: CancellationToken | None = None,
    ) -> list[SignatureInfo]:
        """Walk the enhanced history backwards until a short page or the page cap."""
        collected: list[SignatureInfo] = []
        before: str | None = None
        for _ in range(max_pages):
            if is_cancelled(cancel):
                break
            batch = await self.get_page(address, page_size, before)
            collected.extend(batch)
            if len(batch) < page_size:
                break
            before = batch[-1].signature
        return collected
