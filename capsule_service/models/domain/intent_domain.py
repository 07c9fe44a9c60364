# capsule_service/models/domain/intent_domain.py
"""
Intent Domain Models
Typed view of the JSON payload stored in a capsule's intent data.
Validated once at the boundary; the crank only works with these models.
"""

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from solders.pubkey import Pubkey


class IntentParseError(Exception):
    """Raised when an intent payload is missing, malformed or has no recipients."""

    def __init__(self, message: str, capsule_address: str | None = None):
        super().__init__(message)
        self.capsule_address = capsule_address


def _validate_address(value: str) -> str:
    try:
        Pubkey.from_string(value)
    except ValueError as e:
        raise ValueError(f"invalid address {value!r}") from e
    return value


class Beneficiary(BaseModel):
    """A recipient of a fungible-asset share."""

    model_config = ConfigDict(populate_by_name=True)

    address: str
    amount: str = "0"
    amount_type: Literal["fixed", "percentage"] = Field("fixed", alias="amountType")

    @field_validator("address")
    @classmethod
    def check_address(cls, value: str) -> str:
        return _validate_address(value)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> str:
        if value is None:
            return "0"
        return str(value)

    def pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.address)


class NftAssignment(BaseModel):
    mint: str
    recipient: str

    @field_validator("mint", "recipient")
    @classmethod
    def check_address(cls, value: str) -> str:
        return _validate_address(value)


class _IntentBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent: str = ""
    inactivity_days: float | None = Field(None, alias="inactivityDays")
    delay_days: float | None = Field(None, alias="delayDays")


class TokenIntent(_IntentBase):
    """Fungible (native or SPL) transfer split across beneficiaries."""

    type: Literal["token"] = "token"
    beneficiaries: list[Beneficiary] = Field(default_factory=list)
    total_amount: str | None = Field(None, alias="totalAmount")

    @field_validator("total_amount", mode="before")
    @classmethod
    def coerce_total(cls, value: Any) -> str | None:
        return None if value is None else str(value)

    def recipient_addresses(self) -> list[Pubkey]:
        return [b.pubkey() for b in self.beneficiaries]


class NftIntent(_IntentBase):
    """NFT hand-over: explicit mint/recipient assignments or parallel lists."""

    type: Literal["nft"]
    nft_mints: list[str] = Field(default_factory=list, alias="nftMints")
    nft_recipients: list[str] = Field(default_factory=list, alias="nftRecipients")
    nft_assignments: list[NftAssignment] = Field(default_factory=list, alias="nftAssignments")

    @field_validator("nft_mints", "nft_recipients")
    @classmethod
    def check_addresses(cls, values: list[str]) -> list[str]:
        return [_validate_address(v) for v in values]

    def recipient_addresses(self) -> list[Pubkey]:
        if self.nft_assignments:
            return [Pubkey.from_string(a.recipient) for a in self.nft_assignments]
        return [Pubkey.from_string(r) for r in self.nft_recipients]


IntentPayload = Annotated[Union[TokenIntent, NftIntent], Field(discriminator="type")]

_intent_adapter = TypeAdapter(IntentPayload)


def parse_intent_payload(intent_data: bytes, capsule_address: str | None = None) -> TokenIntent | NftIntent:
    """
    Decode and validate a capsule's intent payload.

    Payloads written before the type tag existed carry no "type" and are read
    as token intents. Any other unrecognized tag is rejected.

    Raises:
        IntentParseError: If the payload is not UTF-8 JSON or fails validation
    """
    try:
        raw = json.loads(intent_data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise IntentParseError(f"Intent data is not valid JSON: {e}", capsule_address) from e

    if not isinstance(raw, dict):
        raise IntentParseError("Intent data must be a JSON object", capsule_address)

    if "type" not in raw:
        raw = {**raw, "type": "token"}

    try:
        return _intent_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", str(e))
        raise IntentParseError(f"Invalid intent payload ({location}): {message}", capsule_address) from e


def require_recipients(intent: TokenIntent | NftIntent, capsule_address: str | None = None) -> list[Pubkey]:
    """Recipient addresses of an intent; an empty list is an error at execution time."""
    recipients = intent.recipient_addresses()
    if not recipients:
        raise IntentParseError("No beneficiaries in intent data", capsule_address)
    return recipients
