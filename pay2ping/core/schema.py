"""
Stake record types, lifecycle states and the allowed transitions between them.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class StakeStatus(str, Enum):
    SCHEDULED = "scheduled"
    ENDED = "ended"
    PROCESSING = "processing"
    REFUNDED = "refunded"
    CLAIMED = "claimed"
    ERROR_CHECKING = "error_checking"
    ERROR_RELEASE_MISSING_DATA = "error_release_missing_data"
    ERROR_RELEASE_FAILED = "error_release_failed"
    ERROR_RELEASE_UNKNOWN = "error_release_unknown"
    NEEDS_REVIEW = "needs_review"


TERMINAL_STATUSES = frozenset({StakeStatus.REFUNDED, StakeStatus.CLAIMED})

ELIGIBLE_STATUSES = frozenset({
    StakeStatus.SCHEDULED,
    StakeStatus.ENDED,
    StakeStatus.ERROR_CHECKING,
    StakeStatus.ERROR_RELEASE_FAILED,
})

# Records the loop will not touch again without an operator.
REVIEW_STATUSES = frozenset({
    StakeStatus.ERROR_RELEASE_MISSING_DATA,
    StakeStatus.ERROR_RELEASE_UNKNOWN,
    StakeStatus.NEEDS_REVIEW,
})

TRANSITIONS = {
    StakeStatus.SCHEDULED: {StakeStatus.ENDED, StakeStatus.PROCESSING},
    StakeStatus.ENDED: {StakeStatus.PROCESSING},
    StakeStatus.ERROR_CHECKING: {StakeStatus.PROCESSING},
    StakeStatus.ERROR_RELEASE_FAILED: {StakeStatus.PROCESSING},
    StakeStatus.PROCESSING: {
        StakeStatus.REFUNDED,
        StakeStatus.CLAIMED,
        StakeStatus.ERROR_CHECKING,
        StakeStatus.ERROR_RELEASE_MISSING_DATA,
        StakeStatus.ERROR_RELEASE_FAILED,
        StakeStatus.ERROR_RELEASE_UNKNOWN,
        StakeStatus.NEEDS_REVIEW,
    },
    # operator edges
    StakeStatus.ERROR_RELEASE_MISSING_DATA: {StakeStatus.ENDED},
    StakeStatus.NEEDS_REVIEW: {StakeStatus.ENDED, StakeStatus.REFUNDED, StakeStatus.CLAIMED},
    StakeStatus.ERROR_RELEASE_UNKNOWN: {StakeStatus.ENDED, StakeStatus.REFUNDED, StakeStatus.CLAIMED},
    StakeStatus.REFUNDED: set(),
    StakeStatus.CLAIMED: set(),
}


def can_transition(from_status, to_status) -> bool:
    return StakeStatus(to_status) in TRANSITIONS.get(StakeStatus(from_status), set())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime. None if unparsable."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ceil_to_second(dt: datetime) -> datetime:
    """Round up to the next whole second when there is a fractional part."""
    if dt.microsecond:
        dt = dt.replace(microsecond=0) + timedelta(seconds=1)
    return dt


def format_timestamp(dt: datetime) -> str:
    """Canonical storage form: UTC, second precision, 'Z' suffix (sorts lexically)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class StakeRecord:
    escrow_id: str
    initializer_id: Optional[str]
    beneficiary_id: Optional[str]
    vault_id: Optional[str]
    stake_amount: Optional[int]
    attendee_contact: str
    meeting_id: str
    meeting_end_time: str  # raw stored text; may be unparsable for legacy rows
    status: StakeStatus = StakeStatus.SCHEDULED
    last_confirmation_ref: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[str] = None
    release_attempted_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def end_time(self) -> Optional[datetime]:
        return parse_timestamp(self.meeting_end_time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def missing_release_fields(self, recipient_id: Optional[str]) -> List[str]:
        """Fields a release needs that this record does not carry."""
        missing = []
        if not recipient_id:
            missing.append("recipient_id")
        if not self.initializer_id:
            missing.append("initializer_id")
        if not self.vault_id:
            missing.append("vault_id")
        if not self.stake_amount or self.stake_amount <= 0:
            missing.append("stake_amount")
        return missing

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class StakeEvent:
    id: int
    escrow_id: str
    from_status: Optional[str]
    to_status: str
    confirmation_ref: Optional[str]
    detail: Optional[str]
    ts: str


@dataclass
class TickReport:
    """Outcome of one reconciliation tick."""
    started_at: datetime
    completed_at: Optional[datetime] = None
    selected: int = 0
    refunded: int = 0
    claimed: int = 0
    error_checking: int = 0
    error_release_missing_data: int = 0
    error_release_failed: int = 0
    error_release_unknown: int = 0
    needs_review: int = 0
    skipped: int = 0
    deferred: int = 0
    recovered: int = 0
    errors: List[str] = field(default_factory=list)

    def count(self, status: StakeStatus):
        setattr(self, status.value, getattr(self, status.value) + 1)

    @property
    def processed(self) -> int:
        return (self.refunded + self.claimed + self.error_checking + self.error_release_missing_data
                + self.error_release_failed + self.error_release_unknown + self.needs_review)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["processed"] = self.processed
        return data
