"""
Ledger scanner: signature history paging and transaction fetch for one address.
"""

import asyncio
from dataclasses import dataclass, field

from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.ledger_domain import SignatureInfo, TransactionRecord
from capsule_service.services.ledger.cancellation import CancellationToken, is_cancelled
from capsule_service.services.ledger.enhanced_history import EnhancedHistoryClient, EnhancedHistoryError
from capsule_service.services.ledger.rpc_client import LedgerRpcError

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 200
FETCH_BATCH_SIZE = 50


@dataclass
class ScanResult:
    """Transactions touching an address, newest first, enhanced-only extras appended."""

    transactions: list[TransactionRecord] = field(default_factory=list)
    pages_fetched: int = 0
    truncated: bool = False
    unavailable_count: int = 0


class LedgerScanner:
    """
    Collects every transaction that touched an address.

    Signature pages are walked backwards with a "before" cursor set to the
    oldest signature seen. Individual transaction fetch failures are recorded
    as unavailable records and never abort the scan.
    """

    def __init__(
        self,
        client,
        *,
        enhanced_history: EnhancedHistoryClient | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        fetch_batch_size: int = FETCH_BATCH_SIZE,
    ):
        self.client = client
        self.enhanced_history = enhanced_history
        self.page_size = page_size
        self.max_pages = max_pages
        self.fetch_batch_size = max(1, fetch_batch_size)

    async def fetch_signature_history(
        self, address: str, cancel: CancellationToken | None = None
    ) -> tuple[list[SignatureInfo], int, bool]:
        """
        Page through signature history.

        Returns:
            (deduplicated signatures, pages fetched, truncated)
        """
        signatures: list[SignatureInfo] = []
        seen: set[str] = set()
        before: str | None = None
        pages = 0
        truncated = False

        while True:
            if pages >= self.max_pages:
                truncated = True
                logger.warning("Signature history page cap reached", address=address, max_pages=self.max_pages)
                break
            if is_cancelled(cancel):
                truncated = True
                break

            batch = await self.client.get_signatures_for_address(address, limit=self.page_size, before=before)
            pages += 1

            for info in batch:
                if info.signature not in seen:
                    seen.add(info.signature)
                    signatures.append(info)

            if len(batch) < self.page_size:
                break
            before = batch[-1].signature

        logger.debug("Signature history fetched", address=address, pages=pages, signature_count=len(signatures))
        return signatures, pages, truncated

    async def _merge_enhanced_history(
        self, address: str, signatures: list[SignatureInfo], cancel: CancellationToken | None
    ) -> list[SignatureInfo]:
        if self.enhanced_history is None or is_cancelled(cancel):
            return signatures

        try:
            extra = await self.enhanced_history.fetch_all_signatures(
                address, page_size=self.page_size, cancel=cancel
            )
        except EnhancedHistoryError as e:
            logger.warning("Enhanced history unavailable, using primary RPC only", address=address, error=str(e))
            return signatures

        seen = {info.signature for info in signatures}
        merged = list(signatures)
        for info in extra:
            if info.signature not in seen:
                seen.add(info.signature)
                merged.append(info)

        if len(merged) > len(signatures):
            logger.info(
                "Merged signatures from enhanced history",
                address=address,
                added=len(merged) - len(signatures),
            )
        return merged

    async def _fetch_transaction(self, info: SignatureInfo) -> TransactionRecord | None:
        try:
            return await self.client.get_transaction(info)
        except LedgerRpcError as e:
            logger.warning("Transaction fetch failed", signature=info.signature, error=str(e))
            return None

    async def fetch_transactions(
        self, signatures: list[SignatureInfo], cancel: CancellationToken | None = None
    ) -> tuple[list[TransactionRecord], int, bool]:
        """
        Fetch full records in batches.

        Returns:
            (records in signature order, unavailable count, truncated)
        """
        records: list[TransactionRecord] = []
        unavailable = 0
        for start in range(0, len(signatures), self.fetch_batch_size):
            if is_cancelled(cancel):
                return records, unavailable, True

            batch = signatures[start : start + self.fetch_batch_size]
            fetched = await asyncio.gather(*(self._fetch_transaction(info) for info in batch))
            for info, record in zip(batch, fetched):
                if record is None:
                    unavailable += 1
                    record = TransactionRecord.unavailable(info)
                records.append(record)
        return records, unavailable, False

    async def scan(self, address: str, cancel: CancellationToken | None = None) -> ScanResult:
        """
        Scan all transactions for `address`.

        Raises:
            LedgerRpcError: When a signature page cannot be fetched after retries
        """
        signatures, pages, truncated = await self.fetch_signature_history(address, cancel)
        signatures = await self._merge_enhanced_history(address, signatures, cancel)

        records, unavailable, fetch_truncated = await self.fetch_transactions(signatures, cancel)

        result = ScanResult(
            transactions=records,
            pages_fetched=pages,
            truncated=truncated or fetch_truncated,
            unavailable_count=unavailable,
        )
        logger.info(
            "Ledger scan completed",
            address=address,
            transactions=len(records),
            pages=pages,
            unavailable=unavailable,
            truncated=result.truncated,
        )
        return result
