"""
Program-derived address helpers for the capsule program.
"""

from solders.pubkey import Pubkey

CAPSULE_SEED = b"intent_capsule"
VAULT_SEED = b"capsule_vault"
FEE_CONFIG_SEED = b"fee_config"

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

DEFAULT_PUBKEY = Pubkey.default()


def capsule_address(owner: Pubkey, program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([CAPSULE_SEED, bytes(owner)], program_id)[0]


def vault_address(owner: Pubkey, program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([VAULT_SEED, bytes(owner)], program_id)[0]


def fee_config_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([FEE_CONFIG_SEED], program_id)[0]


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Associated token account of `owner` for `mint`."""
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def parse_pubkey(value: str) -> Pubkey | None:
    """Parse a base58 address, returning None when it is not one."""
    try:
        return Pubkey.from_string(value)
    except ValueError:
        return None
