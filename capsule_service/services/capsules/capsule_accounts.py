"""
Enumeration of capsule accounts owned by the capsule program.
Shared by the indexer and the eligibility scanner so both see the same set.
"""

from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.capsule_domain import DecodedCapsuleAccount
from capsule_service.models.domain.ledger_domain import ProgramAccount
from capsule_service.services.capsules.account_decoder import (
    MalformedAccountError,
    decode_capsule_account,
    has_capsule_discriminator,
)

logger = get_logger(__name__)


def decode_program_accounts(accounts: list[ProgramAccount]) -> list[DecodedCapsuleAccount]:
    """
    Decode every capsule-tagged account, skipping malformed records.

    Accounts with a different record tag (fee config and the like) are
    ignored silently; malformed capsules are logged and skipped so one bad
    record never blocks the rest.
    """
    decoded: list[DecodedCapsuleAccount] = []
    skipped = 0
    for item in accounts:
        data = item.account.data
        if not has_capsule_discriminator(data):
            continue
        try:
            capsule = decode_capsule_account(data, item.address)
        except MalformedAccountError as e:
            skipped += 1
            logger.warning("Skipping malformed capsule account", address=item.address, error=str(e))
            continue
        decoded.append(
            DecodedCapsuleAccount(address=item.address, capsule=capsule, account_owner=item.account.owner)
        )

    if skipped:
        logger.info("Capsule accounts decoded", decoded=len(decoded), skipped=skipped)
    return decoded


async def load_capsule_accounts(client, program_id: str) -> list[DecodedCapsuleAccount]:
    """Fetch and decode all capsule accounts of `program_id`."""
    accounts = await client.get_program_accounts(program_id)
    return decode_program_accounts(accounts)
