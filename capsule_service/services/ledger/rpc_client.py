"""
Ledger JSON-RPC client for capsule indexing and crank execution.
Handles request throttling, retry with exponential backoff and normalization
of provider responses into ledger domain records. Submitted transactions are
confirmed before they are reported as landed.
"""

import asyncio
import base64
import itertools
from collections.abc import Sequence
from typing import Any

import httpx
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.ledger_domain import (
    AccountInfo,
    ProgramAccount,
    SignatureInfo,
    TransactionRecord,
)

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 4
BACKOFF_BASE = 2.0
BACKOFF_MAX = 10.0
MAX_CONCURRENCY = 8
CONFIRM_TIMEOUT = 120  # seconds
CONFIRM_POLL_INTERVAL = 2.0  # seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# JSON-RPC server errors that indicate a lagging or throttled node
RETRY_RPC_CODES = {-32004, -32005, -32007, -32014, -32429, 429}
RETRY_MESSAGE_HINTS = ("rate limit", "too many requests", "timeout", "timed out", "unavailable")

COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}


class LedgerRpcError(Exception):
    """Base exception for ledger RPC failures."""

    def __init__(
        self,
        message: str,
        method: str | None = None,
        status_code: int | None = None,
        rpc_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.method = method
        self.status_code = status_code
        self.rpc_code = rpc_code
        self.response_data = response_data or {}


class TransientRpcError(LedgerRpcError):
    """Retryable failure: timeouts, throttling, provider unavailable."""


class TerminalRpcError(LedgerRpcError):
    """Non-retryable failure: malformed request, authorization, rejected transaction."""


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (1-based): base doubling up to cap."""
    return min(base * (2 ** (attempt - 1)), cap)


class LedgerRpcClient:
    """
    Retrying client for the ledger JSON-RPC surface.

    One instance is created at process start and shared by every component.
    Concurrent in-flight requests are bounded by a semaphore so fan-out
    callers cannot trip provider throttling.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        backoff_max: float = BACKOFF_MAX,
        max_concurrency: int = MAX_CONCURRENCY,
        commitment: str = "confirmed",
        confirm_timeout: float = CONFIRM_TIMEOUT,
        confirm_poll_interval: float = CONFIRM_POLL_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.commitment = commitment
        self.confirm_timeout = confirm_timeout
        self.confirm_poll_interval = confirm_poll_interval
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._ids = itertools.count(1)
        self._client = self._create_client(timeout, max_concurrency, transport)

    @classmethod
    def from_settings(cls, settings, **overrides) -> "LedgerRpcClient":
        config = settings.get_rpc_client_config()
        config.update(overrides)
        return cls(settings.rpc_url(), **config)

    def _create_client(
        self, timeout: float, max_concurrency: int, transport: httpx.AsyncBaseTransport | None
    ) -> httpx.AsyncClient:
        """Create async HTTP client for the RPC endpoint."""
        limits = httpx.Limits(
            max_keepalive_connections=max_concurrency, max_connections=max_concurrency * 2
        )
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=limits,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Execute a JSON-RPC call with throttling, retry and backoff."""
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._semaphore:
                    return await self._call_once(method, params)
            except TransientRpcError as e:
                if attempt >= self.max_retries:
                    logger.warning(
                        "Ledger RPC retries exhausted",
                        method=method,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                backoff = backoff_delay(attempt, self.backoff_base, self.backoff_max)
                logger.debug(
                    "Ledger RPC transient error, retrying",
                    method=method,
                    attempt=attempt,
                    status_code=e.status_code,
                    rpc_code=e.rpc_code,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Ledger RPC retry loop exhausted")

    async def _call_once(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientRpcError(f"{method} timed out: {e}", method=method) from e
        except httpx.TransportError as e:
            raise TransientRpcError(f"{method} network error: {e}", method=method) from e

        return self._handle_rpc_response(response, method)

    def _handle_rpc_response(self, response: httpx.Response, method: str) -> Any:
        """
        Validate a JSON-RPC response and return its result.

        Raises:
            TransientRpcError: For throttling and provider-side failures
            TerminalRpcError: For request, authorization and execution errors
        """
        if response.status_code in RETRY_STATUS_CODES:
            raise TransientRpcError(
                f"{method} failed with HTTP {response.status_code}",
                method=method,
                status_code=response.status_code,
            )

        if not response.is_success:
            logger.error(
                "Ledger RPC request rejected",
                method=method,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise TerminalRpcError(
                f"{method} failed with HTTP {response.status_code}",
                method=method,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientRpcError(
                f"{method} returned a non-JSON body", method=method, status_code=response.status_code
            ) from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            code = error.get("code")
            message = error.get("message", "Unknown RPC error")
            error_cls = TransientRpcError if _is_retryable_rpc_error(code, message) else TerminalRpcError
            raise error_cls(
                f"{method}: {message}",
                method=method,
                status_code=response.status_code,
                rpc_code=code,
                response_data=error,
            )

        return data.get("result") if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    async def get_program_accounts(self, program_id: str) -> list[ProgramAccount]:
        """Fetch every account owned by `program_id`."""
        result = await self._call(
            "getProgramAccounts",
            [program_id, {"encoding": "base64", "commitment": self.commitment}],
        )
        # Some providers wrap the list in a context object
        if isinstance(result, dict):
            result = result.get("value") or []
        accounts = [ProgramAccount.from_rpc_item(item) for item in result or []]
        logger.debug("Program accounts fetched", program_id=program_id, account_count=len(accounts))
        return accounts

    async def get_signatures_for_address(
        self, address: str, limit: int = 100, before: str | None = None
    ) -> list[SignatureInfo]:
        options: dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before:
            options["before"] = before
        result = await self._call("getSignaturesForAddress", [address, options])
        return [SignatureInfo.from_rpc_item(item) for item in result or []]

    async def get_transaction(self, info: SignatureInfo) -> TransactionRecord | None:
        """Fetch and normalize one transaction; None when the node has no record of it."""
        result = await self._call(
            "getTransaction",
            [
                info.signature,
                {
                    "encoding": "json",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            return None
        return TransactionRecord.from_rpc(info, result)

    async def get_account_info(self, address: str) -> AccountInfo | None:
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if not value:
            return None
        return AccountInfo.from_rpc(address, value)

    async def get_latest_blockhash(self) -> tuple[Hash, int]:
        """Latest blockhash and the last block height at which it is still valid."""
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return Hash.from_string(value["blockhash"]), int(value["lastValidBlockHeight"])

    async def get_block_height(self) -> int:
        return int(await self._call("getBlockHeight", [{"commitment": self.commitment}]))

    async def get_signature_statuses(self, signatures: Sequence[str]) -> list[dict | None]:
        result = await self._call("getSignatureStatuses", [list(signatures)])
        return list((result or {}).get("value") or [None] * len(signatures))

    async def get_health(self) -> bool:
        result = await self._call("getHealth", [])
        return result == "ok"

    # ------------------------------------------------------------------
    # Write surface
    # ------------------------------------------------------------------

    async def send_transaction(
        self, instructions: Sequence[Instruction], signer: Keypair, *, confirm: bool = True
    ) -> str:
        """
        Sign `instructions` with `signer` as fee payer and submit them.

        With `confirm` set the call returns only once the transaction reached
        the client's commitment level.

        Raises:
            TerminalRpcError: If the transaction is rejected, fails on the
                ledger, or its blockhash expires before it lands
            TransientRpcError: If confirmation is still pending at the timeout
        """
        blockhash, last_valid_block_height = await self.get_latest_blockhash()
        message = Message.new_with_blockhash(list(instructions), signer.pubkey(), blockhash)
        transaction = Transaction([signer], message, blockhash)
        encoded = base64.b64encode(bytes(transaction)).decode("ascii")

        signature = await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )
        logger.info("Transaction submitted", signature=signature, payer=str(signer.pubkey()))

        if confirm:
            await self.confirm_transaction(signature, last_valid_block_height)
        return signature

    async def confirm_transaction(self, signature: str, last_valid_block_height: int) -> dict:
        """
        Poll the signature status until it reaches the client's commitment.

        Returns:
            dict: The final signature status
        """
        required = COMMITMENT_LEVELS.get(self.commitment, COMMITMENT_LEVELS["confirmed"])
        deadline = asyncio.get_running_loop().time() + self.confirm_timeout

        while True:
            [status] = await self.get_signature_statuses([signature])
            if status:
                err = status.get("err")
                if err:
                    logger.warning("Transaction failed on ledger", signature=signature, err=err)
                    raise TerminalRpcError(
                        f"{signature}: transaction failed: {describe_transaction_error(err)}",
                        method="confirmTransaction",
                        response_data={"err": err},
                    )
                level = COMMITMENT_LEVELS.get(status.get("confirmationStatus") or "", -1)
                if level >= required:
                    logger.debug(
                        "Transaction confirmed",
                        signature=signature,
                        status=status.get("confirmationStatus"),
                    )
                    return status

            if await self.get_block_height() > last_valid_block_height:
                raise TerminalRpcError(
                    f"{signature}: blockhash expired before confirmation",
                    method="confirmTransaction",
                )
            if asyncio.get_running_loop().time() >= deadline:
                raise TransientRpcError(
                    f"{signature}: not confirmed after {self.confirm_timeout}s",
                    method="confirmTransaction",
                )
            await asyncio.sleep(self.confirm_poll_interval)


def custom_program_error(err: Any) -> int | None:
    """Custom program error code from a transaction error, if it carries one."""
    if isinstance(err, dict):
        detail = err.get("InstructionError")
        if isinstance(detail, list) and len(detail) == 2 and isinstance(detail[1], dict):
            code = detail[1].get("Custom")
            return code if isinstance(code, int) else None
    return None


def describe_transaction_error(err: Any) -> str:
    code = custom_program_error(err)
    if code is not None:
        return f"custom program error: {code:#x}"
    return str(err)


def _is_retryable_rpc_error(code: Any, message: str) -> bool:
    if code in RETRY_RPC_CODES:
        return True
    lowered = (message or "").lower()
    return any(hint in lowered for hint in RETRY_MESSAGE_HINTS)
