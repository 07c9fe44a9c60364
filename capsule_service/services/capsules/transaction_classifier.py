"""
Transaction classification for capsule event history.

The ledger exposes no structured instruction names here, so the instruction
kind is recovered from program log text with an ordered pattern table. The
heuristic lives only in this module.
"""

from dataclasses import dataclass

from capsule_service.models.domain.capsule_domain import (
    CapsuleEvent,
    EventKind,
    EventStatus,
    TokenDelta,
)
from capsule_service.models.domain.ledger_domain import TransactionRecord

LAMPORTS_PER_SOL = 1_000_000_000

# Ordered: first match wins
INSTRUCTION_PATTERNS: tuple[tuple[EventKind, tuple[str, ...]], ...] = (
    (EventKind.CREATED, ("create_capsule", "createcapsule")),
    (EventKind.EXECUTED, ("execute_intent", "executeintent")),
    (EventKind.INTENT_UPDATED, ("update_intent", "updateintent")),
    (EventKind.ACTIVITY_UPDATED, ("update_activity", "updateactivity")),
    (EventKind.DEACTIVATED, ("deactivate_capsule", "deactivatecapsule")),
    (EventKind.RECREATED, ("recreate_capsule", "recreatecapsule")),
)


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one transaction."""

    signature: str
    kind: EventKind
    event: CapsuleEvent | None = None
    is_execute_attempt: bool = False
    failed: bool = False

    @property
    def execute_succeeded(self) -> bool:
        return self.is_execute_attempt and not self.failed


def detect_instruction_kind(logs: tuple[str, ...] | list[str]) -> EventKind:
    """Classify a transaction by case-insensitive substring match over its logs."""
    if not logs:
        return EventKind.UNKNOWN
    text = " ".join(logs).lower()
    for kind, patterns in INSTRUCTION_PATTERNS:
        if any(pattern in text for pattern in patterns):
            return kind
    return EventKind.UNKNOWN


def native_delta(record: TransactionRecord, account_index: int) -> float | None:
    """Balance change of one account in SOL, when both balances are present."""
    if record.pre_balances is None or record.post_balances is None or account_index < 0:
        return None
    if account_index >= len(record.pre_balances) or account_index >= len(record.post_balances):
        return None
    return (record.post_balances[account_index] - record.pre_balances[account_index]) / LAMPORTS_PER_SOL


def token_delta(record: TransactionRecord) -> TokenDelta | None:
    """First mint whose UI amount differs between pre and post token balances."""
    by_mint: dict[str, list[float]] = {}
    for balance in record.pre_token_balances:
        if balance.mint:
            by_mint[balance.mint] = [balance.ui_amount, 0.0]
    for balance in record.post_token_balances:
        if balance.mint:
            by_mint.setdefault(balance.mint, [0.0, 0.0])[1] = balance.ui_amount

    for mint, (pre, post) in by_mint.items():
        if pre != post:
            return TokenDelta(mint=mint, amount=post - pre)
    return None


def _resolve_accounts(record: TransactionRecord, indexes: tuple[int, ...]) -> list[str]:
    keys = record.account_keys
    return [keys[i] for i in indexes if 0 <= i < len(keys) and keys[i]]


def classify_transaction(record: TransactionRecord, program_id: str) -> Classification:
    """
    Turn one transaction into at most one capsule event.

    The first instruction addressed to the capsule program with at least two
    resolvable accounts supplies the capsule (first account) and owner
    (second account). Failed transactions still produce an event with
    status=failed. Execute attempts are counted from log text even when no
    instruction resolves.
    """
    kind = detect_instruction_kind(record.logs)
    is_execute_attempt = kind == EventKind.EXECUTED

    if kind == EventKind.UNKNOWN or not record.has_message:
        return Classification(record.signature, kind, None, is_execute_attempt, record.failed)

    for instruction in record.instructions:
        index = instruction.program_id_index
        if not (0 <= index < len(record.account_keys)) or record.account_keys[index] != program_id:
            continue

        accounts = _resolve_accounts(record, instruction.accounts)
        if len(accounts) < 2:
            continue

        capsule_key, owner_key = accounts[0], accounts[1]
        owner_index = record.account_keys.index(owner_key)

        event = CapsuleEvent(
            signature=record.signature,
            block_time=record.block_time,
            status=EventStatus.FAILED if record.failed else EventStatus.SUCCESS,
            kind=kind,
            capsule_address=capsule_key,
            owner_address=owner_key,
            sol_delta=native_delta(record, owner_index),
            token_delta=token_delta(record),
            payload_size=(len(instruction.data) or None) if is_execute_attempt else None,
            logs=record.logs,
        )
        return Classification(record.signature, kind, event, is_execute_attempt, record.failed)

    return Classification(record.signature, kind, None, is_execute_attempt, record.failed)


def sort_events(events: list[CapsuleEvent]) -> list[CapsuleEvent]:
    """Newest first; undated events last; ties broken by signature."""
    return sorted(events, key=lambda e: (-(e.block_time or 0), e.signature))

