"""
Crank signer loading.

The crank wallet secret may be supplied as a JSON array of 64 bytes, a
base58 string or a base64 string.
"""

import base64
import binascii
import json
import re

import base58
from solders.keypair import Keypair

KEYPAIR_LENGTH = 64
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")


class ConfigurationError(Exception):
    """Missing or invalid service configuration."""

    def __init__(self, message: str, setting: str | None = None):
        super().__init__(message)
        self.setting = setting


def _invalid(reason: str) -> ConfigurationError:
    return ConfigurationError(
        f"CRANK_WALLET_PRIVATE_KEY not set or invalid: {reason}",
        setting="CRANK_WALLET_PRIVATE_KEY",
    )


def _from_bytes(raw: bytes) -> Keypair:
    if len(raw) != KEYPAIR_LENGTH:
        raise _invalid(f"expected {KEYPAIR_LENGTH} bytes, got {len(raw)}")
    try:
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise _invalid(str(e)) from e


def load_crank_keypair(secret: str | None) -> Keypair:
    """
    Parse the crank wallet secret.

    Raises:
        ConfigurationError: If the secret is absent or cannot be decoded
    """
    raw = (secret or "").strip()
    if len(raw) < 32:
        raise _invalid("missing")

    if raw.startswith("["):
        try:
            values = json.loads(raw)
            return _from_bytes(bytes(values))
        except (ValueError, TypeError) as e:
            raise _invalid(f"bad JSON byte array ({e})") from e

    if _BASE58_RE.match(raw):
        try:
            decoded = base58.b58decode(raw)
        except ValueError as e:
            raise _invalid(f"bad base58 key ({e})") from e
        return _from_bytes(decoded)

    try:
        decoded = base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise _invalid(f"bad base64 key ({e})") from e
    return _from_bytes(decoded)
