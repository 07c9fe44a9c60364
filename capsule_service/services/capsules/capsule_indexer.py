"""
Capsule indexer: present-state table joined with per-capsule event history.
Backs the dashboard view.
"""

import time
from dataclasses import dataclass, field

from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.capsule_domain import (
    EVENT_ROW_KINDS,
    Capsule,
    CapsuleEvent,
    CapsuleStatus,
    DecodedCapsuleAccount,
    EventKind,
)
from capsule_service.models.domain.ledger_domain import TransactionRecord
from capsule_service.services.capsules.capsule_accounts import load_capsule_accounts
from capsule_service.services.capsules.ledger_scanner import LedgerScanner
from capsule_service.services.capsules.transaction_classifier import classify_transaction, sort_events
from capsule_service.services.ledger.cancellation import CancellationToken

logger = get_logger(__name__)


@dataclass(frozen=True)
class IndexedCapsule:
    address: str
    capsule: Capsule
    status: CapsuleStatus
    events: tuple[CapsuleEvent, ...] = ()

    @property
    def latest_signature(self) -> str | None:
        return self.events[0].signature if self.events else None

    @property
    def payload_size(self) -> int:
        return len(self.capsule.intent_data)


@dataclass(frozen=True)
class IndexSummary:
    total_events: int = 0
    active: int = 0
    executed: int = 0
    expired: int = 0
    execute_attempts: int = 0
    execute_succeeded: int = 0

    @property
    def success_rate(self) -> float:
        if self.execute_attempts == 0:
            return 0.0
        return round(self.execute_succeeded / self.execute_attempts * 100, 2)


@dataclass
class CapsuleIndex:
    capsules: list[IndexedCapsule] = field(default_factory=list)
    event_rows: list[CapsuleEvent] = field(default_factory=list)
    events_by_capsule: dict[str, list[CapsuleEvent]] = field(default_factory=dict)
    summary: IndexSummary = field(default_factory=IndexSummary)
    generated_at: int = 0
    truncated: bool = False


def build_event_tables(
    transactions: list[TransactionRecord], program_id: str
) -> tuple[dict[str, list[CapsuleEvent]], list[CapsuleEvent], int, int]:
    """
    Classify transactions into per-capsule histories and dashboard event rows.

    Returns:
        (events by capsule address, event rows, execute attempts, successful attempts)
    """
    events_by_capsule: dict[str, list[CapsuleEvent]] = {}
    event_rows: list[CapsuleEvent] = []
    attempts = 0
    succeeded = 0

    for record in transactions:
        result = classify_transaction(record, program_id)
        if result.is_execute_attempt:
            attempts += 1
            if result.execute_succeeded:
                succeeded += 1

        event = result.event
        if event is None:
            continue
        events_by_capsule.setdefault(event.capsule_address, []).append(event)
        if event.kind in EVENT_ROW_KINDS:
            event_rows.append(event)

    for address, events in events_by_capsule.items():
        events_by_capsule[address] = sort_events(events)

    return events_by_capsule, sort_events(event_rows), attempts, succeeded


def join_capsules(
    decoded: list[DecodedCapsuleAccount],
    events_by_capsule: dict[str, list[CapsuleEvent]],
    now: int,
) -> list[IndexedCapsule]:
    """Attach event history and display status; drop capsules still waiting to be activated."""
    rows: list[IndexedCapsule] = []
    for item in decoded:
        status = item.capsule.display_status(now)
        if status == CapsuleStatus.ACTIVE and not item.capsule.is_active:
            continue
        rows.append(
            IndexedCapsule(
                address=item.address,
                capsule=item.capsule,
                status=status,
                events=tuple(events_by_capsule.get(item.address, [])),
            )
        )
    return sorted(rows, key=lambda row: (-row.capsule.last_activity, row.address))


class CapsuleIndexer:
    """Composes account enumeration, the ledger scanner and the classifier."""

    def __init__(self, client, scanner: LedgerScanner, program_id: str):
        self.client = client
        self.scanner = scanner
        self.program_id = program_id

    async def build_index(
        self, now: int | None = None, cancel: CancellationToken | None = None
    ) -> CapsuleIndex:
        """
        Build the present-state table and event histories.

        Raises:
            LedgerRpcError: If account enumeration or signature paging fails
        """
        now = int(time.time()) if now is None else now

        decoded = await load_capsule_accounts(self.client, self.program_id)
        scan = await self.scanner.scan(self.program_id, cancel)

        events_by_capsule, event_rows, attempts, succeeded = build_event_tables(
            scan.transactions, self.program_id
        )
        capsules = join_capsules(decoded, events_by_capsule, now)

        summary = IndexSummary(
            total_events=len(event_rows),
            active=sum(1 for c in capsules if c.status == CapsuleStatus.ACTIVE),
            executed=sum(1 for e in event_rows if e.kind == EventKind.EXECUTED),
            expired=sum(1 for c in capsules if c.status == CapsuleStatus.EXPIRED),
            execute_attempts=attempts,
            execute_succeeded=succeeded,
        )

        logger.info(
            "Capsule index built",
            capsules=len(capsules),
            event_rows=len(event_rows),
            transactions=len(scan.transactions),
            truncated=scan.truncated,
        )

        return CapsuleIndex(
            capsules=capsules,
            event_rows=event_rows,
            events_by_capsule=events_by_capsule,
            summary=summary,
            generated_at=now,
            truncated=scan.truncated,
        )
