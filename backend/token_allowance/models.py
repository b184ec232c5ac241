"""
Token Allowance Data Models

Pydantic models for allowance operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the API.
"""

from datetime import datetime
from typing import Optional, List, Literal, Dict, Any

from pydantic import BaseModel, Field, model_validator


# ==================== LEDGER MODELS ====================

class AllowanceMetadata(BaseModel):
    """Audit sidecar written at creation time, never used for decisions"""
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    rollover_tokens: int = 0
    base_tokens: int = 0
    plan_type: Optional[str] = None


class AllowancePeriod(BaseModel):
    """One row of the period ledger: a token grant for [period_start, period_end)"""
    id: str
    user_id: str
    period_start: str  # ISO datetime string (UTC)
    period_end: str  # ISO datetime string (UTC)
    tokens_granted: int = Field(0, ge=0)
    tokens_used: int = Field(0, ge=0)
    source: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AllowanceResult(BaseModel):
    """Outcome of an ensure call"""
    created: bool
    allowance: AllowancePeriod


class EnsureOptions(BaseModel):
    """Options for creating a period when none is active"""
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    source: Optional[str] = None
    force_tokens: Optional[int] = Field(None, ge=0)
    force_credits: Optional[int] = Field(None, ge=0)
    skip_rollover: bool = False

    @model_validator(mode="after")
    def _single_forced_grant(self):
        if self.force_tokens is not None and self.force_credits is not None:
            raise ValueError("Provide force_tokens or force_credits, not both")
        return self

    def has_overrides(self) -> bool:
        """True when any field changes what would be granted by default"""
        return bool(self.model_dump(exclude_defaults=True))


# ==================== REQUEST MODELS ====================

class EnsureAllowanceRequest(EnsureOptions):
    """Body of POST /ensure-token-allowance (every field optional)"""
    user_id: Optional[str] = None
    batch_init: bool = False

    def options(self) -> EnsureOptions:
        return EnsureOptions(**self.model_dump(include=set(EnsureOptions.model_fields)))


class BalanceCorrectionRequest(BaseModel):
    """Admin overwrite of a period's counters"""
    tokens_granted: int = Field(..., ge=0)
    tokens_used: int = Field(..., ge=0)


class RemainingTokensRequest(BaseModel):
    """Admin edit of the remaining balance (tokens_used is derived)"""
    remaining_tokens: int = Field(..., ge=0)


class SettingUpdateRequest(BaseModel):
    value_int: int


# ==================== RESPONSE MODELS ====================

class EnsureAllowanceResponse(BaseModel):
    success: bool = True
    created: bool
    allowance: AllowancePeriod


class BatchItemResult(BaseModel):
    user_id: str
    status: Literal["created", "exists", "error"]
    balance: Optional[AllowancePeriod] = None
    error: Optional[str] = None


class BatchSummary(BaseModel):
    created: int = 0
    skipped: int = 0
    errors: int = 0


class BatchResponse(BaseModel):
    success: bool = True
    summary: BatchSummary
    results: List[BatchItemResult]


class AllowanceBalance(BaseModel):
    """Allowance period plus derived token/credit figures"""
    allowance: AllowancePeriod
    remaining_tokens: int
    tokens_per_credit: int
    credits_granted: float
    credits_used: float
    credits_remaining: float


class AllowanceBalanceResponse(AllowanceBalance):
    """Response model for the caller's balance endpoint"""
    created: bool
    plan_type: str
    plan_base_tokens: int


class TokenSettings(BaseModel):
    """Snapshot of the admin-configured credit settings"""
    tokens_per_credit: int = 200
    credits_free_per_month: int = 0
    credits_premium_per_month: int = 1500

    def credits_for_plan(self, plan_type: str) -> int:
        if plan_type == "premium":
            return self.credits_premium_per_month
        return self.credits_free_per_month


class CreditSetting(BaseModel):
    key: str
    label: str
    value_int: int
    min_value: int
    description: Optional[str] = None
    is_default: bool = False


class BalanceCorrectionResult(BaseModel):
    success: bool = True
    allowance: AllowancePeriod
    audit_logged: bool
    warning: Optional[str] = None
