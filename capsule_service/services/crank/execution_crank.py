"""
Execution crank: submits execute_intent for every eligible capsule.

Each capsule is attempted at most once per pass and independently; one
failure never aborts the batch. Re-execution across overlapping passes is
rejected by the program itself, so such rejections are reported like any
other per-capsule failure.
"""

import asyncio
import hashlib

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from capsule_service.infrastructure.observability.logging import get_logger, log_crank_pass
from capsule_service.models.domain.capsule_domain import CrankResult, EligibleCapsule
from capsule_service.models.domain.intent_domain import IntentParseError, TokenIntent, require_recipients
from capsule_service.services.crank.eligibility_scanner import EligibilityScanner
from capsule_service.services.ledger.addresses import TOKEN_PROGRAM_ID, associated_token_address
from capsule_service.services.ledger.cancellation import CancellationToken, is_cancelled
from capsule_service.services.ledger.rpc_client import LedgerRpcError, custom_program_error

logger = get_logger(__name__)

EXECUTE_INTENT_DISCRIMINATOR = hashlib.sha256(b"global:execute_intent").digest()[:8]
MAX_CONCURRENT_EXECUTIONS = 4

# Anchor numbers program errors from 6000; CapsuleInactive is the second variant
CAPSULE_INACTIVE_ERROR = 6001
ALREADY_EXECUTED_HINTS = (
    "alreadyexecuted",
    "already executed",
    "capsuleinactive",
    f"custom program error: {CAPSULE_INACTIVE_ERROR:#x}",
)


class SubmissionError(Exception):
    """The ledger rejected or failed to accept an execution transaction."""

    def __init__(self, message: str, capsule_address: str | None = None, already_executed: bool = False):
        super().__init__(message)
        self.capsule_address = capsule_address
        self.already_executed = already_executed


def build_execute_instruction(
    eligible: EligibleCapsule,
    program_id: Pubkey,
    platform_fee_recipient: Pubkey | None = None,
) -> Instruction:
    """
    Build the execute_intent instruction for one capsule.

    Beneficiaries are appended as writable, non-signing accounts. For token
    intents on an SPL mint the vault's and each beneficiary's associated token
    accounts are used instead of the wallets. Absent optional accounts are
    passed as the program id.

    Raises:
        IntentParseError: If the intent payload is invalid or lists no recipients
    """
    address = str(eligible.capsule_address)
    if eligible.intent is None:
        raise IntentParseError(eligible.intent_error or "Intent data could not be parsed", address)

    recipients = require_recipients(eligible.intent, address)
    mint = eligible.capsule.mint
    spl_transfer = isinstance(eligible.intent, TokenIntent) and mint is not None

    vault_token_account = associated_token_address(eligible.vault_address, mint) if spl_transfer else None
    if spl_transfer:
        recipients = [associated_token_address(owner, mint) for owner in recipients]

    accounts = [
        AccountMeta(eligible.capsule_address, is_signer=False, is_writable=True),
        AccountMeta(eligible.vault_address, is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(eligible.fee_config_address, is_signer=False, is_writable=False),
        _optional_account(platform_fee_recipient, program_id),
        _optional_account(vault_token_account, program_id),
    ]
    accounts.extend(AccountMeta(pubkey, is_signer=False, is_writable=True) for pubkey in recipients)

    return Instruction(program_id, EXECUTE_INTENT_DISCRIMINATOR, accounts)


def _optional_account(pubkey: Pubkey | None, program_id: Pubkey) -> AccountMeta:
    if pubkey is None:
        return AccountMeta(program_id, is_signer=False, is_writable=False)
    return AccountMeta(pubkey, is_signer=False, is_writable=True)


def _is_already_executed(error: LedgerRpcError) -> bool:
    data = error.response_data
    # preflight rejections nest the transaction error under "data"
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    err = data.get("err") or nested.get("err")
    if custom_program_error(err) == CAPSULE_INACTIVE_ERROR:
        return True
    text = str(error).lower()
    return any(hint in text for hint in ALREADY_EXECUTED_HINTS)


class ExecutionCrank:
    """Submits execution transactions for a batch of eligible capsules."""

    def __init__(
        self,
        client,
        program_id: str,
        signer: Keypair,
        *,
        platform_fee_recipient: str | None = None,
        max_concurrency: int = MAX_CONCURRENT_EXECUTIONS,
    ):
        self.client = client
        self.program_id = Pubkey.from_string(program_id)
        self.signer = signer
        self.platform_fee_recipient = (
            Pubkey.from_string(platform_fee_recipient) if platform_fee_recipient else None
        )
        self.max_concurrency = max(1, max_concurrency)

    async def execute_capsule(self, eligible: EligibleCapsule) -> str:
        """
        Submit execute_intent for one capsule.

        Returns:
            str: Transaction signature

        Raises:
            IntentParseError: If beneficiaries are missing or malformed
            SubmissionError: If the ledger rejects the transaction or it fails to confirm
        """
        instruction = build_execute_instruction(eligible, self.program_id, self.platform_fee_recipient)
        address = str(eligible.capsule_address)
        try:
            return await self.client.send_transaction([instruction], self.signer)
        except LedgerRpcError as e:
            raise SubmissionError(str(e), address, already_executed=_is_already_executed(e)) from e

    async def _execute_with_semaphore(
        self,
        semaphore: asyncio.Semaphore,
        eligible: EligibleCapsule,
        result: CrankResult,
        cancel: CancellationToken | None,
    ) -> None:
        address = str(eligible.capsule_address)
        async with semaphore:
            if is_cancelled(cancel):
                result.truncated = True
                return
            try:
                signature = await self.execute_capsule(eligible)
            except IntentParseError as e:
                logger.warning("Capsule intent unusable", capsule_address=address, error=str(e))
                result.errors.append(f"{address}: {e}")
                return
            except SubmissionError as e:
                if e.already_executed:
                    logger.info("Capsule already executed elsewhere", capsule_address=address)
                else:
                    logger.error("Capsule execution rejected", capsule_address=address, error=str(e))
                result.errors.append(f"{address}: {e}")
                return
            except Exception as e:
                logger.error(
                    "Unexpected error executing capsule",
                    capsule_address=address,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.errors.append(f"{address}: {type(e).__name__}: {e}")
                return

        result.executed_count += 1
        result.signatures[address] = signature
        logger.info("Capsule executed", capsule_address=address, signature=signature)

    async def execute_all(
        self, eligible: list[EligibleCapsule], cancel: CancellationToken | None = None
    ) -> CrankResult:
        result = CrankResult(eligible_count=len(eligible))
        if not eligible:
            return result

        semaphore = asyncio.Semaphore(self.max_concurrency)
        await asyncio.gather(
            *(self._execute_with_semaphore(semaphore, item, result, cancel) for item in eligible)
        )
        # gather completes in arbitrary order; keep reports stable
        result.errors.sort()
        return result


async def run_crank(
    client,
    settings,
    signer: Keypair,
    now: int | None = None,
    cancel: CancellationToken | None = None,
) -> CrankResult:
    """One full crank pass: eligibility scan followed by execution."""
    scanner = EligibilityScanner(
        client,
        settings.PROGRAM_ID,
        settings.DELEGATION_PROGRAM_ID,
        max_concurrency=settings.CRANK_MAX_CONCURRENCY,
    )
    crank = ExecutionCrank(
        client,
        settings.PROGRAM_ID,
        signer,
        platform_fee_recipient=settings.PLATFORM_FEE_RECIPIENT,
        max_concurrency=settings.CRANK_MAX_CONCURRENCY,
    )

    eligible = await scanner.find_eligible(now=now, cancel=cancel)
    result = await crank.execute_all(eligible, cancel)

    log_crank_pass(result)
    return result
