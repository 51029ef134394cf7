"""
Request/response models for the ops API.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, field_validator


class StakeCreateRequest(BaseModel):
    escrow_id: str
    initializer_id: Optional[str] = None
    beneficiary_id: Optional[str] = None
    vault_id: Optional[str] = None
    stake_amount: Optional[int] = None
    attendee_contact: str
    meeting_id: str
    meeting_end_time: datetime

    @field_validator('escrow_id', 'attendee_contact', 'meeting_id')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('must not be empty')
        return v.strip()

    @field_validator('stake_amount')
    @classmethod
    def amount_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('stake_amount must be positive')
        return v


class StakeCorrectionRequest(BaseModel):
    initializer_id: Optional[str] = None
    beneficiary_id: Optional[str] = None
    vault_id: Optional[str] = None
    stake_amount: Optional[int] = None

    @field_validator('stake_amount')
    @classmethod
    def amount_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('stake_amount must be positive')
        return v

    def fields(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class StakeResolveRequest(BaseModel):
    status: Literal["refunded", "claimed"]
    confirmation_ref: str

    @field_validator('confirmation_ref')
    @classmethod
    def ref_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('confirmation_ref cannot be empty')
        return v.strip()


class StakeResponse(BaseModel):
    escrow_id: str
    initializer_id: Optional[str] = None
    beneficiary_id: Optional[str] = None
    vault_id: Optional[str] = None
    stake_amount: Optional[int] = None
    attendee_contact: str
    meeting_id: str
    meeting_end_time: str
    status: str
    last_confirmation_ref: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StakeEventResponse(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    confirmation_ref: Optional[str] = None
    detail: Optional[str] = None
    ts: str


class StakeDetailResponse(BaseModel):
    stake: StakeResponse
    history: List[StakeEventResponse]


class StakeListResponse(BaseModel):
    items: List[StakeResponse]
    count: int


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    stake_counts: Dict[str, int]
    heartbeat: str


class ReconcileStatusResponse(BaseModel):
    heartbeat: Dict[str, Any]
    last_report: Optional[Dict[str, Any]] = None


class TickReportResponse(BaseModel):
    started_at: str
    completed_at: Optional[str] = None
    selected: int
    processed: int
    refunded: int
    claimed: int
    error_checking: int
    error_release_missing_data: int
    error_release_failed: int
    error_release_unknown: int
    needs_review: int
    skipped: int
    deferred: int
    recovered: int
    errors: List[str]
