# capsule_service/models/api/capsule_response.py
"""
Crank and capsule index API response models.
Used by routes for output formatting.
"""

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CrankRunResponse(_CamelModel):
    """Response of the crank trigger endpoint."""

    ok: bool = Field(..., description="True when no capsule failed")
    eligible_count: int = Field(..., alias="eligibleCount", description="Capsules found eligible")
    executed_count: int = Field(..., alias="executedCount", description="Execution transactions submitted")
    errors: list[str] = Field(default_factory=list, description="Per-capsule error strings")
    signatures: dict[str, str] = Field(
        default_factory=dict, description="Submitted signature per capsule address"
    )
    truncated: bool = Field(default=False, description="Pass stopped at its deadline")


class ErrorResponse(BaseModel):
    error: str


class TokenDeltaResponse(_CamelModel):
    mint: str
    amount: float
    display: str


class CapsuleEventResponse(_CamelModel):
    signature: str
    block_time: int | None = Field(None, alias="blockTime")
    status: str
    kind: str
    capsule_address: str = Field(..., alias="capsuleAddress")
    owner: str | None = None
    sol_delta: float | None = Field(None, alias="solDelta")
    token_delta: TokenDeltaResponse | None = Field(None, alias="tokenDelta")
    payload_size: int | None = Field(None, alias="payloadSize")


class CapsuleResponse(_CamelModel):
    capsule_address: str = Field(..., alias="capsuleAddress")
    owner: str
    status: str
    is_active: bool = Field(..., alias="isActive")
    inactivity_period: int = Field(..., alias="inactivityPeriod")
    last_activity: int = Field(..., alias="lastActivity")
    executed_at: int | None = Field(None, alias="executedAt")
    payload_size: int = Field(..., alias="payloadSize")
    mint: str | None = None
    latest_signature: str | None = Field(None, alias="latestSignature")
    events: list[CapsuleEventResponse] = Field(default_factory=list)


class IndexSummaryResponse(_CamelModel):
    total: int
    active: int
    executed: int
    expired: int
    proofs: int
    success_rate: float = Field(..., alias="successRate")


class CapsuleIndexResponse(_CamelModel):
    capsules: list[CapsuleResponse] = Field(default_factory=list)
    events: list[CapsuleEventResponse] = Field(default_factory=list)
    summary: IndexSummaryResponse
    generated_at: int = Field(..., alias="generatedAt")
    truncated: bool = False


class CapsuleDetailResponse(_CamelModel):
    capsule: CapsuleResponse
    account_owner: str = Field(..., alias="accountOwner")
    delegated: bool
