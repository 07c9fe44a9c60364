# capsule_service/models/domain/capsule_domain.py
"""
Capsule Domain Models
Decoded capsule state, derived events and crank results.
Used by the indexer, the eligibility scanner and the execution crank.
"""

from dataclasses import dataclass, field
from enum import Enum

from solders.pubkey import Pubkey

from capsule_service.models.domain.intent_domain import IntentPayload


class EventKind(str, Enum):
    CREATED = "created"
    EXECUTED = "executed"
    INTENT_UPDATED = "intent_updated"
    ACTIVITY_UPDATED = "activity_updated"
    DEACTIVATED = "deactivated"
    RECREATED = "recreated"
    UNKNOWN = "unknown"


class EventStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class CapsuleStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"
    EXECUTED = "Executed"


# Kinds that appear as standalone rows in the dashboard event list
EVENT_ROW_KINDS = frozenset({EventKind.CREATED, EventKind.RECREATED, EventKind.EXECUTED})


@dataclass(frozen=True)
class Capsule:
    """Decoded intent capsule account."""

    owner: Pubkey
    inactivity_period: int
    last_activity: int
    intent_data: bytes
    is_active: bool
    executed_at: int | None = None
    bump: int | None = None
    vault_bump: int | None = None
    mint: Pubkey | None = None

    @property
    def deadline(self) -> int:
        """Unix time after which the capsule counts as inactive."""
        return self.last_activity + self.inactivity_period

    def is_expired(self, now: int) -> bool:
        return self.executed_at is None and self.deadline < now

    def display_status(self, now: int) -> CapsuleStatus:
        if self.executed_at is not None:
            return CapsuleStatus.EXECUTED
        if self.is_expired(now):
            return CapsuleStatus.EXPIRED
        return CapsuleStatus.ACTIVE


@dataclass(frozen=True)
class DecodedCapsuleAccount:
    """A capsule paired with the address it was read from."""

    address: str
    capsule: Capsule
    account_owner: str | None = None


@dataclass(frozen=True)
class TokenDelta:
    mint: str
    amount: float

    def display(self) -> str:
        sign = "+" if self.amount > 0 else ""
        mint = f"{self.mint[:4]}...{self.mint[-4:]}" if len(self.mint) > 10 else self.mint
        return f"{sign}{self.amount:.4f} {mint}"


@dataclass(frozen=True)
class CapsuleEvent:
    """One classified transaction that touched a capsule."""

    signature: str
    block_time: int | None
    status: EventStatus
    kind: EventKind
    capsule_address: str
    owner_address: str | None = None
    sol_delta: float | None = None
    token_delta: TokenDelta | None = None
    payload_size: int | None = None
    logs: tuple[str, ...] = ()


@dataclass(frozen=True)
class EligibleCapsule:
    """A capsule ready for execution, with its derived addresses."""

    capsule_address: Pubkey
    capsule: Capsule
    vault_address: Pubkey
    fee_config_address: Pubkey
    intent: IntentPayload | None = None
    intent_error: str | None = None


@dataclass
class CrankResult:
    """Summary of one crank pass."""

    eligible_count: int = 0
    executed_count: int = 0
    errors: list[str] = field(default_factory=list)
    signatures: dict[str, str] = field(default_factory=dict)
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "eligibleCount": self.eligible_count,
            "executedCount": self.executed_count,
            "errors": list(self.errors),
            "signatures": dict(self.signatures),
            "truncated": self.truncated,
        }
