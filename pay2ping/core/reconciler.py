"""
Reconciliation tick: select ended meetings, check attendance, release the stake,
record the outcome.

Records are handled strictly one at a time. A failure on one record turns into
an error status for that record and never stops the rest of the batch; only an
unavailable store aborts the tick.
"""

import os
import socket
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Tuple

from util.logging import logger

from . import config
from .dao import StakeStore
from .errors import (
    AttendanceError,
    DisbursementError,
    DisbursementOutcomeUnknown,
    LeaseLostError,
    StoreUnavailableError,
    ValidationFailure,
)
from .schema import StakeRecord, StakeStatus, TickReport, parse_timestamp, utc_now


def normalize_contact(contact: Optional[str]) -> str:
    return (contact or "").strip().casefold()


def is_attendee(contact: Optional[str], attendees: Iterable[str]) -> bool:
    """Case-insensitive exact match of the staking party's contact against the report."""
    wanted = normalize_contact(contact)
    if not wanted:
        return False
    return wanted in {normalize_contact(a) for a in attendees if a}


def decide_disposition(record: StakeRecord, attended: bool) -> Tuple[Optional[str], StakeStatus]:
    """Attended: refund the initializer. Absent: pay the beneficiary."""
    if attended:
        return record.initializer_id, StakeStatus.REFUNDED
    return record.beneficiary_id, StakeStatus.CLAIMED


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Reconciler:
    """Drives stake records through verification and disbursement."""

    def __init__(self, store: StakeStore, verifier, disburser,
                 lookback: timedelta = timedelta(hours=6),
                 tick_deadline: timedelta = timedelta(seconds=90),
                 lease_ttl: timedelta = timedelta(minutes=10),
                 missing_data_max_attempts: int = 3,
                 owner: str = None,
                 clock: Callable[[], datetime] = utc_now,
                 monotonic: Callable[[], float] = time.monotonic):
        if lease_ttl <= tick_deadline:
            raise ValueError("lease_ttl must exceed tick_deadline")
        self.store = store
        self.verifier = verifier
        self.disburser = disburser
        self.lookback = lookback
        self.tick_deadline = tick_deadline
        self.lease_ttl = lease_ttl
        self.missing_data_max_attempts = missing_data_max_attempts
        self.owner = owner or _default_owner()
        self.clock = clock
        self.monotonic = monotonic
        self.last_report: Optional[TickReport] = None

    @classmethod
    def from_config(cls, store: StakeStore = None) -> "Reconciler":
        """Wire a reconciler from environment configuration."""
        return cls(
            store=store or StakeStore(),
            verifier=config.get_attendance_verifier(),
            disburser=config.get_disbursement_client(),
            lookback=timedelta(seconds=config.get_lookback_seconds()),
            tick_deadline=timedelta(seconds=config.RECONCILE_TICK_DEADLINE_SEC),
            lease_ttl=timedelta(seconds=config.RECONCILE_LEASE_TTL_SEC),
            missing_data_max_attempts=config.MISSING_DATA_MAX_ATTEMPTS,
        )

    def run_tick(self, now: datetime = None) -> TickReport:
        """
        One pass over every eligible record.

        Raises StoreUnavailableError if the store cannot be read or written;
        everything else is recorded per record.
        """
        now = parse_timestamp(now or self.clock())
        report = TickReport(started_at=now)
        deadline = self.monotonic() + self.tick_deadline.total_seconds()

        report.recovered = len(self.store.recover_stale_leases(self.clock()))
        records = self.store.find_eligible(now, self.lookback)
        report.selected = len(records)

        seen = set()
        for index, record in enumerate(records):
            if self.monotonic() >= deadline:
                report.deferred = len({r.escrow_id for r in records[index:]} - seen)
                logger.warning(f"Tick deadline reached, deferring {report.deferred} records to the next tick")
                break
            if record.escrow_id in seen:
                continue
            seen.add(record.escrow_id)

            try:
                outcome = self.process_record(record)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected failure reconciling {record.escrow_id}")
                report.errors.append(f"{record.escrow_id}: {e}")
                continue

            if outcome is None:
                report.skipped += 1
            else:
                report.count(outcome)

        report.completed_at = self.clock()
        self.last_report = report
        logger.log_tick(report.to_dict())
        return report

    def process_record(self, record: StakeRecord) -> Optional[StakeStatus]:
        """Reconcile one record. Returns the status it ended in, or None if it was skipped."""
        if record.status == StakeStatus.PROCESSING:
            logger.info(f"Skipping {record.escrow_id}, already processing")
            return None
        if not self.store.claim(record.escrow_id, self.owner, self.clock(), self.lease_ttl):
            logger.info(f"Skipping {record.escrow_id}, claimed elsewhere or no longer eligible")
            return None
        try:
            attendees = self.verifier.get_attendees(record.meeting_id)
        except Exception as e:
            # ReportNotReady, AttendanceCheckError and anything unclassified are all retryable
            kind = type(e).__name__ if isinstance(e, AttendanceError) else f"unexpected {type(e).__name__}"
            logger.log_attendance_check(record.escrow_id, record.meeting_id, record.attendee_contact,
                                        None, error=f"{kind}: {e}")
            return self._finish(record, StakeStatus.ERROR_CHECKING, detail=f"{kind}: {e}")

        attended = is_attendee(record.attendee_contact, attendees)
        logger.log_attendance_check(record.escrow_id, record.meeting_id, record.attendee_contact,
                                    attended, participant_count=len(attendees))

        recipient_id, target = decide_disposition(record, attended)

        missing = record.missing_release_fields(recipient_id)
        if missing:
            detail = f"missing {', '.join(missing)}"
            # counted from history; requeue does not reset it
            passes = self.store.count_events(record.escrow_id, StakeStatus.ERROR_RELEASE_MISSING_DATA) + 1
            if passes >= self.missing_data_max_attempts:
                detail += f" after {passes} attempts"
                return self._finish(record, StakeStatus.NEEDS_REVIEW, detail=detail)
            return self._finish(record, StakeStatus.ERROR_RELEASE_MISSING_DATA, detail=detail)

        self.store.mark_release_attempted(record.escrow_id, self.owner, self.clock())

        try:
            confirmation_ref = self.disburser.release(
                record.escrow_id, record.vault_id, recipient_id, record.stake_amount
            )
        except DisbursementOutcomeUnknown as e:
            logger.log_release(record.escrow_id, recipient_id, record.stake_amount, status="unknown", error=str(e))
            return self._finish(record, StakeStatus.ERROR_RELEASE_UNKNOWN, detail=str(e))
        except ValidationFailure as e:
            logger.log_release(record.escrow_id, recipient_id, record.stake_amount, status="rejected", error=str(e))
            return self._finish(record, StakeStatus.NEEDS_REVIEW, detail=f"ValidationFailure: {e}")
        except DisbursementError as e:
            logger.log_release(record.escrow_id, recipient_id, record.stake_amount, status="failed", error=str(e))
            return self._finish(record, StakeStatus.ERROR_RELEASE_FAILED, detail=f"{type(e).__name__}: {e}")
        except Exception as e:
            # an unclassified client error says nothing about whether funds moved
            logger.log_release(record.escrow_id, recipient_id, record.stake_amount, status="unknown", error=str(e))
            return self._finish(record, StakeStatus.ERROR_RELEASE_UNKNOWN,
                                detail=f"unexpected {type(e).__name__}: {e}")

        logger.log_release(record.escrow_id, recipient_id, record.stake_amount, confirmation_ref=confirmation_ref)
        return self._finish(record, target, confirmation_ref=confirmation_ref)

    def _finish(self, record: StakeRecord, status: StakeStatus, confirmation_ref: str = None,
                detail: str = None) -> StakeStatus:
        try:
            self.store.update_status(record.escrow_id, status, confirmation_ref=confirmation_ref,
                                     detail=detail, owner=self.owner)
        except LeaseLostError:
            if confirmation_ref:
                logger.error(f"Lease on {record.escrow_id} lost after release {confirmation_ref}; "
                             f"record needs manual resolution")
            raise
        return status
