"""
Tests for signature paging and transaction fetch.
"""

import pytest

from capsule_service.models.domain.ledger_domain import SignatureInfo, TransactionRecord
from capsule_service.services.capsules.ledger_scanner import LedgerScanner
from capsule_service.services.ledger.cancellation import CancellationToken
from capsule_service.services.ledger.enhanced_history import EnhancedHistoryError

ADDRESS = "BiAB1qZpx8kDgS5dJxKFdCJDNMagCn8xfj4afNhRZWms"


def _history(count: int, prefix: str = "sig") -> list[SignatureInfo]:
    return [SignatureInfo(signature=f"{prefix}-{i}", slot=count - i, block_time=1_000_000 - i) for i in range(count)]


class FakeEnhancedHistory:
    def __init__(self, signatures=None, error: Exception | None = None):
        self.signatures = signatures or []
        self.error = error

    async def fetch_all_signatures(self, address, page_size=100, max_pages=120, cancel=None):
        if self.error:
            raise self.error
        return self.signatures


@pytest.mark.asyncio
async def test_pages_stop_after_short_page(fake_ledger):
    fake_ledger.signatures[ADDRESS] = _history(237)
    scanner = LedgerScanner(fake_ledger, page_size=100)

    signatures, pages, truncated = await scanner.fetch_signature_history(ADDRESS)

    assert len(signatures) == 237
    assert len({s.signature for s in signatures}) == 237
    assert pages == 3
    assert truncated is False
    assert [call[2] for call in fake_ledger.signature_calls] == [None, "sig-99", "sig-199"]


@pytest.mark.asyncio
async def test_duplicate_signatures_across_pages_are_dropped(fake_ledger):
    history = _history(150)
    # provider repeats the cursor entry at the top of the next page
    history.insert(100, history[99])
    fake_ledger.signatures[ADDRESS] = history
    scanner = LedgerScanner(fake_ledger, page_size=100)

    signatures, _, _ = await scanner.fetch_signature_history(ADDRESS)

    assert len(signatures) == 150


@pytest.mark.asyncio
async def test_page_cap_marks_truncated(fake_ledger):
    fake_ledger.signatures[ADDRESS] = _history(500)
    scanner = LedgerScanner(fake_ledger, page_size=100, max_pages=2)

    signatures, pages, truncated = await scanner.fetch_signature_history(ADDRESS)

    assert pages == 2
    assert len(signatures) == 200
    assert truncated is True


@pytest.mark.asyncio
async def test_cancelled_scan_returns_partial(fake_ledger):
    fake_ledger.signatures[ADDRESS] = _history(50)
    cancel = CancellationToken()
    cancel.cancel()

    result = await LedgerScanner(fake_ledger).scan(ADDRESS, cancel)

    assert result.truncated is True
    assert result.transactions == []


@pytest.mark.asyncio
async def test_failed_fetch_becomes_unavailable_record(fake_ledger):
    fake_ledger.signatures[ADDRESS] = _history(3)
    fake_ledger.transactions["sig-0"] = TransactionRecord(signature="sig-0", logs=("x",), has_message=True)
    fake_ledger.failing_signatures.add("sig-1")

    result = await LedgerScanner(fake_ledger, fetch_batch_size=2).scan(ADDRESS)

    assert [r.signature for r in result.transactions] == ["sig-0", "sig-1", "sig-2"]
    assert result.transactions[0].has_message is True
    assert result.transactions[1].has_message is False
    assert result.transactions[1].block_time == 999_999
    assert result.unavailable_count == 2


@pytest.mark.asyncio
async def test_enhanced_history_adds_missing_signatures(fake_ledger):
    fake_ledger.signatures[ADDRESS] = _history(2)
    extra = [SignatureInfo(signature="sig-1"), SignatureInfo(signature="old-1")]
    scanner = LedgerScanner(fake_ledger, enhanced_history=FakeEnhancedHistory(extra))

    result = await scanner.scan(ADDRESS)

    assert [r.signature for r in result.transactions] == ["sig-0", "sig-1", "old-1"]


@pytest.mark.asyncio
async def test_enhanced_history_failure_is_not_fatal(fake_ledger):
    fake_ledger.signatures[ADDRESS] = _history(2)
    scanner = LedgerScanner(
        fake_ledger, enhanced_history=FakeEnhancedHistory(error=EnhancedHistoryError("down", 503))
    )

    result = await scanner.scan(ADDRESS)

    assert len(result.transactions) == 2
