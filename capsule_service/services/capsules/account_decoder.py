"""
Capsule account codec.

Account layout (little-endian, no padding):

    [8 tag][32 owner][8 inactivity_period i64][8 last_activity i64]
    [4 intent length u32][intent bytes][1 is_active][1 has_executed_at]
    [8 executed_at i64, only if has_executed_at]
    [1 bump][1 vault_bump][32 mint]   (optional trailer)

Decoding is pure and holds no shared state.
"""

import struct

from solders.pubkey import Pubkey

from capsule_service.models.domain.capsule_domain import Capsule

CAPSULE_DISCRIMINATOR = bytes([64, 226, 112, 218, 172, 210, 4, 113])

TAG_SIZE = 8
PUBKEY_SIZE = 32
# tag + owner + two i64 + u32 length + two bool bytes, with an empty intent
MIN_ACCOUNT_SIZE = TAG_SIZE + PUBKEY_SIZE + 8 + 8 + 4 + 1 + 1

_I64 = struct.Struct("<q")
_U32 = struct.Struct("<I")


class MalformedAccountError(Exception):
    """Raised when account bytes do not hold a well-formed capsule record."""

    def __init__(self, message: str, address: str | None = None, offset: int | None = None):
        super().__init__(message)
        self.address = address
        self.offset = offset


class ByteReader:
    """Forward-only cursor over a byte buffer with bounds-checked reads."""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = memoryview(bytes(data))
        self.offset = offset

    def remaining(self) -> int:
        return len(self._data) - self.offset

    def read(self, size: int) -> bytes:
        if size < 0 or self.offset + size > len(self._data):
            raise MalformedAccountError(
                f"Read of {size} bytes at offset {self.offset} exceeds buffer of {len(self._data)}",
                offset=self.offset,
            )
        chunk = self._data[self.offset : self.offset + size].tobytes()
        self.offset += size
        return chunk

    def skip(self, size: int) -> None:
        self.read(size)

    def read_i64(self) -> int:
        return _I64.unpack(self.read(8))[0]

    def read_u32(self) -> int:
        return _U32.unpack(self.read(4))[0]

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_bool(self) -> bool:
        # Only 1 is true; any other byte is tolerated as false
        return self.read_u8() == 1

    def read_pubkey(self) -> Pubkey:
        return Pubkey(self.read(PUBKEY_SIZE))


def has_capsule_discriminator(data: bytes) -> bool:
    return len(data) >= TAG_SIZE and bytes(data[:TAG_SIZE]) == CAPSULE_DISCRIMINATOR


def decode_capsule_account(data: bytes, address: str | None = None) -> Capsule:
    """
    Decode raw capsule account bytes.

    Args:
        data: Raw account data, record tag included
        address: Account address, only used for error context

    Returns:
        Capsule: Decoded record

    Raises:
        MalformedAccountError: Truncated buffer or inconsistent length prefix
    """
    if len(data) < MIN_ACCOUNT_SIZE:
        raise MalformedAccountError(
            f"Account data too short: {len(data)} < {MIN_ACCOUNT_SIZE} bytes", address=address
        )

    reader = ByteReader(data)
    try:
        reader.skip(TAG_SIZE)
        owner = reader.read_pubkey()
        inactivity_period = reader.read_i64()
        last_activity = reader.read_i64()

        intent_length = reader.read_u32()
        if intent_length > reader.remaining():
            raise MalformedAccountError(
                f"Intent length {intent_length} exceeds remaining {reader.remaining()} bytes",
                offset=reader.offset,
            )
        intent_data = reader.read(intent_length)

        is_active = reader.read_bool()
        has_executed_at = reader.read_bool()
        executed_at = reader.read_i64() if has_executed_at else None

        bump = reader.read_u8() if reader.remaining() >= 1 else None
        vault_bump = reader.read_u8() if reader.remaining() >= 1 else None
        mint = reader.read_pubkey() if reader.remaining() >= PUBKEY_SIZE else None
    except MalformedAccountError as e:
        e.address = address
        raise

    if mint == Pubkey.default():
        mint = None

    return Capsule(
        owner=owner,
        inactivity_period=inactivity_period,
        last_activity=last_activity,
        intent_data=intent_data,
        is_active=is_active,
        executed_at=executed_at,
        bump=bump,
        vault_bump=vault_bump,
        mint=mint,
    )


def encode_capsule_account(capsule: Capsule) -> bytes:
    """
    Serialize a capsule into the on-chain layout (inverse of decode_capsule_account).

    Raises:
        ValueError: If a trailer field is set while an earlier one is missing
    """
    trailer = (capsule.bump, capsule.vault_bump, capsule.mint)
    present = [field is not None for field in trailer]
    if present != sorted(present, reverse=True):
        raise ValueError("Capsule trailer fields bump, vault_bump and mint must be set in order")

    parts = [
        CAPSULE_DISCRIMINATOR,
        bytes(capsule.owner),
        _I64.pack(capsule.inactivity_period),
        _I64.pack(capsule.last_activity),
        _U32.pack(len(capsule.intent_data)),
        bytes(capsule.intent_data),
        b"\x01" if capsule.is_active else b"\x00",
    ]
    if capsule.executed_at is None:
        parts.append(b"\x00")
    else:
        parts.append(b"\x01")
        parts.append(_I64.pack(capsule.executed_at))

    if capsule.bump is not None:
        parts.append(bytes([capsule.bump]))
    if capsule.vault_bump is not None:
        parts.append(bytes([capsule.vault_bump]))
    if capsule.mint is not None:
        parts.append(bytes(capsule.mint))
    return b"".join(parts)
