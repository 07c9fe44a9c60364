import asyncio
import contextlib
import dataclasses
import json

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from capsule_service.config import Settings
from capsule_service.models.domain.capsule_domain import Capsule
from capsule_service.models.domain.ledger_domain import AccountInfo, ProgramAccount, SignatureInfo
from capsule_service.services.capsules.account_decoder import decode_capsule_account, encode_capsule_account
from capsule_service.services.ledger.addresses import capsule_address
from capsule_service.services.ledger.rpc_client import TerminalRpcError

PROGRAM_ID = "BiAB1qZpx8kDgS5dJxKFdCJDNMagCn8xfj4afNhRZWms"
DELEGATION_PROGRAM_ID = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"


class FakeLedgerClient:
    """In-memory ledger implementing the client surface used by the services."""

    def __init__(self, program_id: str = PROGRAM_ID, clock: int = 0):
        self.program_id = program_id
        self.clock = clock
        self.accounts: dict[str, AccountInfo] = {}
        self.signatures: dict[str, list[SignatureInfo]] = {}
        self.transactions: dict = {}
        self.failing_signatures: set[str] = set()
        self.rejections: dict[str, str | Exception] = {}
        self.sent: list[str] = []
        self.signature_calls: list[tuple[str, int, str | None]] = []
        self.latency = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    # -- setup helpers -----------------------------------------------------

    def add_capsule(self, capsule: Capsule, owner: str | None = None) -> str:
        address = str(capsule_address(capsule.owner, Pubkey.from_string(self.program_id)))
        self.accounts[address] = AccountInfo(
            address=address,
            owner=owner or self.program_id,
            data=encode_capsule_account(capsule),
        )
        return address

    def add_raw_account(self, address: str, data: bytes, owner: str | None = None) -> None:
        self.accounts[address] = AccountInfo(address=address, owner=owner or self.program_id, data=data)

    def decode(self, address: str) -> Capsule:
        return decode_capsule_account(self.accounts[address].data, address)

    # -- client surface ----------------------------------------------------

    @contextlib.asynccontextmanager
    async def _request(self):
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
            yield
        finally:
            self.in_flight -= 1

    async def get_program_accounts(self, program_id: str) -> list[ProgramAccount]:
        return [ProgramAccount(address=a, account=info) for a, info in self.accounts.items()]

    async def get_signatures_for_address(
        self, address: str, limit: int = 100, before: str | None = None
    ) -> list[SignatureInfo]:
        self.signature_calls.append((address, limit, before))
        history = self.signatures.get(address, [])
        start = 0
        if before is not None:
            start = next(i for i, info in enumerate(history) if info.signature == before) + 1
        return history[start : start + limit]

    async def get_transaction(self, info: SignatureInfo):
        if info.signature in self.failing_signatures:
            raise TerminalRpcError("getTransaction: boom", method="getTransaction")
        return self.transactions.get(info.signature)

    async def get_account_info(self, address: str) -> AccountInfo | None:
        async with self._request():
            return self.accounts.get(address)

    async def get_health(self) -> bool:
        return True

    async def send_transaction(self, instructions, signer: Keypair, *, confirm: bool = True) -> str:
        async with self._request():
            return self._apply_execution(instructions)

    def _apply_execution(self, instructions) -> str:
        address = str(instructions[0].accounts[0].pubkey)
        rejection = self.rejections.get(address)
        if isinstance(rejection, Exception):
            raise rejection
        if rejection is not None:
            raise TerminalRpcError(rejection, method="sendTransaction")

        capsule = self.decode(address)
        if capsule.executed_at is not None:
            raise TerminalRpcError(
                "sendTransaction: Transaction simulation failed: custom program error: 0x1771",
                method="sendTransaction",
            )
        executed = dataclasses.replace(capsule, is_active=False, executed_at=self.clock)
        self.accounts[address] = dataclasses.replace(
            self.accounts[address], data=encode_capsule_account(executed)
        )

        signature = f"sig-{len(self.sent) + 1}"
        self.sent.append(address)
        return signature

    async def close(self) -> None:
        return None


@pytest.fixture
def program_id() -> str:
    return PROGRAM_ID


@pytest.fixture
def fake_ledger():
    return FakeLedgerClient()


@pytest.fixture
def crank_signer():
    return Keypair()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        PROGRAM_ID=PROGRAM_ID,
        DELEGATION_PROGRAM_ID=DELEGATION_PROGRAM_ID,
        PLATFORM_FEE_RECIPIENT=None,
        CRANK_WALLET_PRIVATE_KEY=None,
        CRON_SECRET=None,
        HELIUS_API_KEY=None,
        CRANK_MAX_CONCURRENCY=4,
    )


@pytest.fixture
def beneficiary():
    return str(Pubkey.new_unique())


@pytest.fixture
def make_capsule(beneficiary):
    def _make(
        *,
        owner: Pubkey | None = None,
        inactivity_period: int = 86400,
        last_activity: int = 0,
        intent: dict | None = None,
        intent_data: bytes | None = None,
        is_active: bool = True,
        executed_at: int | None = None,
        mint: Pubkey | None = None,
    ) -> Capsule:
        if intent_data is None:
            if intent is None:
                intent = {
                    "intent": "Send my SOL to my sister",
                    "beneficiaries": [{"address": beneficiary, "amount": "1.5", "amountType": "fixed"}],
                    "totalAmount": "1.5",
                    "inactivityDays": 1,
                    "delayDays": 0,
                }
            intent_data = json.dumps(intent).encode("utf-8")
        return Capsule(
            owner=owner or Pubkey.new_unique(),
            inactivity_period=inactivity_period,
            last_activity=last_activity,
            intent_data=intent_data,
            is_active=is_active,
            executed_at=executed_at,
            bump=254,
            vault_bump=253,
            mint=mint,
        )

    return _make
