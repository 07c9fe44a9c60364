# capsule_service/models/domain/ledger_domain.py
"""
Ledger Domain Models
Normalized records for ledger RPC responses.

Every provider response shape is mapped into these types by the RPC client,
so scanners and classifiers never branch on response shape.
"""

import base64
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class SignatureInfo:
    """One entry of a signature history page."""

    signature: str
    slot: int = 0
    err: Any = None
    block_time: int | None = None

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> "SignatureInfo":
        """Build from a single getSignaturesForAddress result item."""
        return cls(
            signature=item["signature"],
            slot=int(item.get("slot") or 0),
            err=item.get("err"),
            block_time=_optional_int(item.get("blockTime")),
        )

    @classmethod
    def from_enhanced_item(cls, item: dict[str, Any]) -> "SignatureInfo | None":
        """Build from an enhanced-history transaction; None when it carries no signature."""
        signature = item.get("signature") or _first(item.get("signatures"))
        if not signature:
            return None
        return cls(
            signature=signature,
            slot=int(item.get("slot") or 0),
            err=item.get("transactionError"),
            block_time=_optional_int(item.get("timestamp", item.get("blockTime"))),
        )


@dataclass(frozen=True)
class CompiledInstruction:
    """Instruction with its program and accounts expressed as account-key indexes."""

    program_id_index: int
    accounts: tuple[int, ...]
    data: str = ""


@dataclass(frozen=True)
class TokenBalance:
    account_index: int
    mint: str
    ui_amount: float
    owner: str | None = None

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> "TokenBalance":
        ui = item.get("uiTokenAmount") or {}
        amount = ui.get("uiAmount")
        if amount is None:
            amount = ui.get("uiAmountString") or 0
        return cls(
            account_index=int(item.get("accountIndex", -1)),
            mint=item.get("mint", ""),
            ui_amount=float(amount),
            owner=item.get("owner"),
        )


@dataclass(frozen=True)
class TransactionRecord:
    """A fetched transaction: logs, decoded message and balance metadata."""

    signature: str
    block_time: int | None = None
    slot: int = 0
    err: Any = None
    logs: tuple[str, ...] = ()
    account_keys: tuple[str, ...] = ()
    instructions: tuple[CompiledInstruction, ...] = ()
    pre_balances: tuple[int, ...] | None = None
    post_balances: tuple[int, ...] | None = None
    pre_token_balances: tuple[TokenBalance, ...] = ()
    post_token_balances: tuple[TokenBalance, ...] = ()
    has_message: bool = False

    @property
    def failed(self) -> bool:
        return self.err is not None

    @classmethod
    def unavailable(cls, info: SignatureInfo) -> "TransactionRecord":
        """Placeholder for a transaction whose full record could not be fetched."""
        return cls(
            signature=info.signature,
            block_time=info.block_time,
            slot=info.slot,
            err=info.err,
        )

    @classmethod
    def from_rpc(cls, info: SignatureInfo, payload: dict[str, Any]) -> "TransactionRecord":
        """
        Normalize a getTransaction result.

        Accepts both the "json" encoding (account keys as strings, instruction
        accounts as indexes) and the "jsonParsed" encoding (account keys as
        objects, instruction program/accounts as addresses).
        """
        meta = payload.get("meta") or {}
        transaction = payload.get("transaction") or {}
        message = transaction.get("message") if isinstance(transaction, dict) else None

        account_keys: list[str] = []
        instructions: list[CompiledInstruction] = []
        if message:
            account_keys = [_key_to_str(key) for key in message.get("accountKeys") or []]
            loaded = meta.get("loadedAddresses") or {}
            # Parsed messages already list lookup-table keys inline
            if not any(isinstance(key, dict) for key in message.get("accountKeys") or []):
                account_keys.extend(loaded.get("writable") or [])
                account_keys.extend(loaded.get("readonly") or [])
            for raw in message.get("instructions") or message.get("compiledInstructions") or []:
                instruction = _normalize_instruction(raw, account_keys)
                if instruction is not None:
                    instructions.append(instruction)

        err = info.err if info.err is not None else meta.get("err")
        block_time = info.block_time if info.block_time is not None else payload.get("blockTime")

        return cls(
            signature=info.signature,
            block_time=_optional_int(block_time),
            slot=int(payload.get("slot") or info.slot or 0),
            err=err,
            logs=tuple(meta.get("logMessages") or ()),
            account_keys=tuple(account_keys),
            instructions=tuple(instructions),
            pre_balances=_optional_tuple(meta.get("preBalances")),
            post_balances=_optional_tuple(meta.get("postBalances")),
            pre_token_balances=tuple(
                TokenBalance.from_rpc_item(item) for item in meta.get("preTokenBalances") or []
            ),
            post_token_balances=tuple(
                TokenBalance.from_rpc_item(item) for item in meta.get("postTokenBalances") or []
            ),
            has_message=bool(message),
        )


@dataclass(frozen=True)
class AccountInfo:
    """Current state of a single account."""

    address: str
    owner: str
    data: bytes
    lamports: int = 0
    executable: bool = False

    @classmethod
    def from_rpc(cls, address: str, value: dict[str, Any]) -> "AccountInfo":
        return cls(
            address=address,
            owner=value.get("owner", ""),
            data=_decode_account_data(value.get("data")),
            lamports=int(value.get("lamports") or 0),
            executable=bool(value.get("executable", False)),
        )


@dataclass(frozen=True)
class ProgramAccount:
    """An account returned by a program-owner enumeration."""

    address: str
    account: AccountInfo = field(repr=False)

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> "ProgramAccount":
        address = item["pubkey"]
        return cls(address=address, account=AccountInfo.from_rpc(address, item.get("account") or {}))


def _normalize_instruction(raw: dict[str, Any], account_keys: list[str]) -> CompiledInstruction | None:
    if "programIdIndex" in raw:
        program_index = int(raw["programIdIndex"])
    elif "programId" in raw:
        program_index = _index_of(account_keys, _key_to_str(raw["programId"]))
    else:
        return None

    accounts: list[int] = []
    for entry in raw.get("accounts") or raw.get("accountKeyIndexes") or []:
        if isinstance(entry, int):
            accounts.append(entry)
        else:
            accounts.append(_index_of(account_keys, _key_to_str(entry)))

    data = raw.get("data") or ""
    return CompiledInstruction(
        program_id_index=program_index,
        accounts=tuple(accounts),
        data=data if isinstance(data, str) else "",
    )


def _decode_account_data(data: Any) -> bytes:
    """Account data arrives as [payload, encoding]; only base64 is requested."""
    if not data:
        return b""
    if isinstance(data, list) and len(data) == 2 and data[1] == "base64":
        return base64.b64decode(data[0])
    if isinstance(data, str):
        return base64.b64decode(data)
    raise ValueError(f"Unsupported account data encoding: {data!r:.60}")


def _key_to_str(key: Any) -> str:
    if isinstance(key, dict):
        return str(key.get("pubkey", ""))
    return str(key)


def _index_of(keys: list[str], key: str) -> int:
    try:
        return keys.index(key)
    except ValueError:
        return -1


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _optional_tuple(values: Any) -> tuple[int, ...] | None:
    if values is None:
        return None
    return tuple(int(v) for v in values)


def _first(values: Any) -> Any:
    if isinstance(values, list) and values:
        return values[0]
    return None
