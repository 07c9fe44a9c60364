"""
Eligibility scanner: capsules whose inactivity deadline has passed and that
the base-layer crank is allowed to execute.
"""

import asyncio
import time

from solders.pubkey import Pubkey

from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.capsule_domain import Capsule, DecodedCapsuleAccount, EligibleCapsule
from capsule_service.models.domain.intent_domain import IntentParseError, parse_intent_payload
from capsule_service.services.capsules.capsule_accounts import load_capsule_accounts
from capsule_service.services.ledger.addresses import fee_config_address, vault_address
from capsule_service.services.ledger.cancellation import CancellationToken, is_cancelled
from capsule_service.services.ledger.rpc_client import LedgerRpcError

logger = get_logger(__name__)

MAX_CONCURRENT_CHECKS = 4


def is_eligible(capsule: Capsule, now: int) -> bool:
    """Active, never executed, and strictly past its inactivity deadline."""
    if not capsule.is_active or capsule.executed_at is not None:
        return False
    if capsule.inactivity_period <= 0:
        return False
    return capsule.last_activity + capsule.inactivity_period < now


class EligibilityScanner:
    """
    Finds capsules the crank should execute.

    Each candidate costs one extra account read: capsules currently owned by
    the delegation program are monitored by the private execution layer and
    are left alone here.
    """

    def __init__(
        self,
        client,
        program_id: str,
        delegation_program_id: str,
        *,
        max_concurrency: int = MAX_CONCURRENT_CHECKS,
    ):
        self.client = client
        self.program_id = program_id
        self.delegation_program_id = delegation_program_id
        self.max_concurrency = max(1, max_concurrency)
        self._program_pubkey = Pubkey.from_string(program_id)

    async def _is_delegated(self, semaphore: asyncio.Semaphore, item: DecodedCapsuleAccount) -> bool | None:
        """True if delegated, False if base-layer owned, None if the check failed."""
        async with semaphore:
            try:
                account = await self.client.get_account_info(item.address)
            except LedgerRpcError as e:
                logger.warning("Ownership check failed, skipping capsule", address=item.address, error=str(e))
                return None

        if account is None:
            logger.info("Capsule account no longer exists", address=item.address)
            return None
        return account.owner == self.delegation_program_id

    def _to_eligible(self, item: DecodedCapsuleAccount) -> EligibleCapsule:
        capsule = item.capsule
        intent = None
        intent_error = None
        try:
            intent = parse_intent_payload(capsule.intent_data, item.address)
        except IntentParseError as e:
            intent_error = str(e)

        return EligibleCapsule(
            capsule_address=Pubkey.from_string(item.address),
            capsule=capsule,
            vault_address=vault_address(capsule.owner, self._program_pubkey),
            fee_config_address=fee_config_address(self._program_pubkey),
            intent=intent,
            intent_error=intent_error,
        )

    async def find_eligible(
        self, now: int | None = None, cancel: CancellationToken | None = None
    ) -> list[EligibleCapsule]:
        """
        Enumerate capsule accounts and keep the executable ones.

        Raises:
            LedgerRpcError: If the account enumeration itself fails
        """
        now = int(time.time()) if now is None else now
        decoded = await load_capsule_accounts(self.client, self.program_id)
        candidates = [item for item in decoded if is_eligible(item.capsule, now)]

        if not candidates:
            logger.info("No eligible capsules", scanned=len(decoded))
            return []

        if is_cancelled(cancel):
            logger.warning("Eligibility scan cancelled before ownership checks", candidates=len(candidates))
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency)
        delegated = await asyncio.gather(*(self._is_delegated(semaphore, item) for item in candidates))

        eligible = [self._to_eligible(item) for item, flag in zip(candidates, delegated) if flag is False]
        logger.info(
            "Eligibility scan completed",
            scanned=len(decoded),
            candidates=len(candidates),
            delegated=sum(1 for flag in delegated if flag),
            eligible=len(eligible),
        )
        return eligible
