"""
Record store for stake records.

Every write touches exactly one stake row plus one history row, inside a single
BEGIN IMMEDIATE transaction. Nothing is ever deleted.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from util.logging import logger

from .db import get_db, init_db, transaction
from .errors import (
    DuplicateKeyError,
    InvalidTransitionError,
    LeaseLostError,
    RecordNotFoundError,
    StoreUnavailableError,
)
from .schema import (
    ELIGIBLE_STATUSES,
    REVIEW_STATUSES,
    TERMINAL_STATUSES,
    StakeEvent,
    StakeRecord,
    StakeStatus,
    can_transition,
    ceil_to_second,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

CORRECTABLE_FIELDS = ("initializer_id", "beneficiary_id", "vault_id", "stake_amount")
CORRECTABLE_STATUSES = (StakeStatus.ERROR_RELEASE_MISSING_DATA, StakeStatus.NEEDS_REVIEW)


def _row_to_record(row: sqlite3.Row) -> StakeRecord:
    return StakeRecord(
        escrow_id=row["escrow_id"],
        initializer_id=row["initializer_id"],
        beneficiary_id=row["beneficiary_id"],
        vault_id=row["vault_id"],
        stake_amount=row["stake_amount"],
        attendee_contact=row["attendee_contact"],
        meeting_id=row["meeting_id"],
        meeting_end_time=row["meeting_end_time"],
        status=StakeStatus(row["status"]),
        last_confirmation_ref=row["last_confirmation_ref"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        lease_owner=row["lease_owner"],
        lease_expires_at=row["lease_expires_at"],
        release_attempted_at=row["release_attempted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _status_values(statuses) -> List[str]:
    return sorted(s.value for s in statuses)


class StakeStore:
    """SQLite-backed store with atomic single-record updates."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        try:
            init_db(db_path)
        except sqlite3.DatabaseError as e:
            raise StoreUnavailableError(f"Cannot initialize stake store: {e}") from e

    @contextmanager
    def _connect(self):
        try:
            with get_db(self.db_path) as conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as e:
            raise StoreUnavailableError(f"Stake store unavailable: {e}") from e

    @staticmethod
    def _fetch(conn, escrow_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM stakes WHERE escrow_id = ?", (escrow_id,)).fetchone()

    @staticmethod
    def _add_event(conn, escrow_id: str, from_status: Optional[str], to_status: str,
                   confirmation_ref: str = None, detail: str = None, ts: str = None):
        conn.execute(
            "INSERT INTO stake_events (escrow_id, from_status, to_status, confirmation_ref, detail, ts) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (escrow_id, from_status, to_status, confirmation_ref, detail, ts or format_timestamp(utc_now()))
        )

    # -- creation ---------------------------------------------------------

    def append(self, record: StakeRecord) -> StakeRecord:
        """Insert a new record in 'scheduled'. Raises DuplicateKeyError if the escrow id exists."""
        if not record.escrow_id or not record.escrow_id.strip():
            raise ValueError("escrow_id cannot be empty")
        amount = record.stake_amount
        if amount is not None and (not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0):
            raise ValueError("stake_amount must be a positive integer")
        if not record.meeting_id or not record.attendee_contact:
            raise ValueError("meeting_id and attendee_contact are required")
        end_time = parse_timestamp(record.meeting_end_time)
        if end_time is None:
            raise ValueError(f"meeting_end_time is not a valid timestamp: {record.meeting_end_time!r}")
        end_time = ceil_to_second(end_time)

        now = format_timestamp(utc_now())
        escrow_id = record.escrow_id.strip()

        with self._connect() as conn:
            try:
                with transaction(conn):
                    conn.execute(
                        "INSERT INTO stakes (escrow_id, initializer_id, beneficiary_id, vault_id, stake_amount, "
                        "attendee_contact, meeting_id, meeting_end_time, status, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (escrow_id, record.initializer_id, record.beneficiary_id, record.vault_id,
                         record.stake_amount, record.attendee_contact.strip(), str(record.meeting_id),
                         format_timestamp(end_time), StakeStatus.SCHEDULED.value, now, now)
                    )
                    self._add_event(conn, escrow_id, None, StakeStatus.SCHEDULED.value, detail="created", ts=now)
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(escrow_id) from e

            row = self._fetch(conn, escrow_id)

        logger.log_stake_transition(escrow_id, None, StakeStatus.SCHEDULED.value, detail="created")
        return _row_to_record(row)

    # -- reads ------------------------------------------------------------

    def get(self, escrow_id: str) -> Optional[StakeRecord]:
        with self._connect() as conn:
            row = self._fetch(conn, escrow_id)
        return _row_to_record(row) if row else None

    def require(self, escrow_id: str) -> StakeRecord:
        record = self.get(escrow_id)
        if record is None:
            raise RecordNotFoundError(escrow_id)
        return record

    def find_eligible(self, now: datetime, lookback: timedelta) -> List[StakeRecord]:
        """
        Records awaiting reconciliation whose meeting ended within [now - lookback, now].

        End times are stored rounded up to the whole second, so a meeting is never
        selected before it has ended; a naive now is taken as UTC.

        Rows with an unparsable end time are skipped and logged; they are never
        picked up again without an operator fixing the row.
        """
        now = parse_timestamp(now)
        statuses = _status_values(ELIGIBLE_STATUSES)
        placeholders = ",".join("?" for _ in statuses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM stakes WHERE status IN ({placeholders}) ORDER BY meeting_end_time, escrow_id",
                statuses
            ).fetchall()

        window_start = now - lookback
        eligible = []
        for row in rows:
            record = _row_to_record(row)
            end_time = record.end_time
            if end_time is None:
                logger.warning(f"Skipping {record.escrow_id}: unparsable meeting_end_time {record.meeting_end_time!r}")
                continue
            if window_start <= end_time <= now:
                eligible.append(record)
        return eligible

    def list_records(self, status: str = None, limit: int = 100) -> List[StakeRecord]:
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM stakes WHERE status = ? ORDER BY meeting_end_time DESC LIMIT ?",
                    (StakeStatus(status).value, limit)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM stakes ORDER BY meeting_end_time DESC LIMIT ?", (limit,)
                ).fetchall()
        return [_row_to_record(row) for row in rows]

    def needs_review(self) -> List[StakeRecord]:
        """Records the reconciler will not retry without operator action."""
        statuses = _status_values(REVIEW_STATUSES)
        placeholders = ",".join("?" for _ in statuses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM stakes WHERE status IN ({placeholders}) ORDER BY updated_at", statuses
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def history(self, escrow_id: str) -> List[StakeEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM stake_events WHERE escrow_id = ? ORDER BY id", (escrow_id,)
            ).fetchall()
        return [StakeEvent(**dict(row)) for row in rows]

    def count_events(self, escrow_id: str, to_status: StakeStatus) -> int:
        """How many times a record has entered the given status."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM stake_events WHERE escrow_id = ? AND to_status = ? AND from_status != ?",
                (escrow_id, StakeStatus(to_status).value, StakeStatus(to_status).value)
            ).fetchone()
        return row["n"]

    def count_by_status(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM stakes GROUP BY status").fetchall()
        return {row["status"]: row["n"] for row in rows}

    # -- writes -----------------------------------------------------------

    def update_status(self, escrow_id: str, new_status, confirmation_ref: str = None,
                      detail: str = None, owner: str = None) -> StakeRecord:
        """
        Atomically move one record to new_status.

        confirmation_ref is preserved when not supplied. When owner is given the
        record must still be 'processing' under that owner's lease.
        """
        new_status = StakeStatus(new_status)
        now = format_timestamp(utc_now())

        with self._connect() as conn:
            with transaction(conn):
                row = self._fetch(conn, escrow_id)
                if row is None:
                    raise RecordNotFoundError(escrow_id)

                current = row["status"]
                if owner is not None and (current != StakeStatus.PROCESSING.value or row["lease_owner"] != owner):
                    raise LeaseLostError(escrow_id, owner)
                if not can_transition(current, new_status):
                    raise InvalidTransitionError(escrow_id, current, new_status.value)

                is_error = new_status.value.startswith("error") or new_status == StakeStatus.NEEDS_REVIEW
                conn.execute(
                    "UPDATE stakes SET status = ?, last_confirmation_ref = COALESCE(?, last_confirmation_ref), "
                    "last_error = ?, lease_owner = NULL, lease_expires_at = NULL, updated_at = ? "
                    "WHERE escrow_id = ?",
                    (new_status.value, confirmation_ref, detail if is_error else row["last_error"], now, escrow_id)
                )
                self._add_event(conn, escrow_id, current, new_status.value, confirmation_ref, detail, ts=now)

            row = self._fetch(conn, escrow_id)

        logger.log_stake_transition(escrow_id, current, new_status.value, confirmation_ref, detail)
        return _row_to_record(row)

    def claim(self, escrow_id: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        """
        Move an eligible record to 'processing' under a lease held by owner.

        Returns False if the record is already processing, terminal, or otherwise
        not eligible. This is the only way into 'processing'.
        """
        statuses = _status_values(ELIGIBLE_STATUSES)
        placeholders = ",".join("?" for _ in statuses)
        stamp = format_timestamp(now)

        with self._connect() as conn:
            with transaction(conn):
                row = self._fetch(conn, escrow_id)
                if row is None:
                    raise RecordNotFoundError(escrow_id)

                cursor = conn.execute(
                    "UPDATE stakes SET status = ?, lease_owner = ?, lease_expires_at = ?, "
                    "release_attempted_at = NULL, attempts = attempts + 1, updated_at = ? "
                    f"WHERE escrow_id = ? AND status IN ({placeholders})",
                    [StakeStatus.PROCESSING.value, owner, format_timestamp(now + ttl), stamp, escrow_id] + statuses
                )
                if cursor.rowcount != 1:
                    return False
                self._add_event(conn, escrow_id, row["status"], StakeStatus.PROCESSING.value,
                                detail=f"claimed by {owner}", ts=stamp)

        logger.log_stake_transition(escrow_id, row["status"], StakeStatus.PROCESSING.value)
        return True

    def mark_release_attempted(self, escrow_id: str, owner: str, now: datetime = None):
        """Record that a disbursement call is about to be made. Raises LeaseLostError if the lease is gone."""
        stamp = format_timestamp(now or utc_now())
        with self._connect() as conn:
            with transaction(conn):
                cursor = conn.execute(
                    "UPDATE stakes SET release_attempted_at = ?, updated_at = ? "
                    "WHERE escrow_id = ? AND status = ? AND lease_owner = ?",
                    (stamp, stamp, escrow_id, StakeStatus.PROCESSING.value, owner)
                )
                if cursor.rowcount != 1:
                    raise LeaseLostError(escrow_id, owner)

    def recover_stale_leases(self, now: datetime) -> List[Tuple[str, StakeStatus]]:
        """
        Release records stuck in 'processing' past their lease.

        A record whose release was never attempted goes back to error_checking
        and is retried; one whose release may have been submitted goes to
        error_release_unknown for manual review.
        """
        stamp = format_timestamp(now)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT escrow_id, release_attempted_at FROM stakes "
                "WHERE status = ? AND (lease_expires_at IS NULL OR lease_expires_at < ?)",
                (StakeStatus.PROCESSING.value, stamp)
            ).fetchall()

        recovered = []
        for row in rows:
            if row["release_attempted_at"]:
                target, detail = StakeStatus.ERROR_RELEASE_UNKNOWN, "lease expired after release attempt"
            else:
                target, detail = StakeStatus.ERROR_CHECKING, "lease expired before release"

            with self._connect() as conn:
                with transaction(conn):
                    cursor = conn.execute(
                        "UPDATE stakes SET status = ?, last_error = ?, lease_owner = NULL, lease_expires_at = NULL, "
                        "updated_at = ? WHERE escrow_id = ? AND status = ? "
                        "AND (lease_expires_at IS NULL OR lease_expires_at < ?)",
                        (target.value, detail, stamp, row["escrow_id"], StakeStatus.PROCESSING.value, stamp)
                    )
                    if cursor.rowcount != 1:
                        continue
                    self._add_event(conn, row["escrow_id"], StakeStatus.PROCESSING.value, target.value,
                                    detail=detail, ts=stamp)

            logger.log_stake_transition(row["escrow_id"], StakeStatus.PROCESSING.value, target.value, detail=detail)
            recovered.append((row["escrow_id"], target))
        return recovered

    # -- operator actions -------------------------------------------------

    def correct_record(self, escrow_id: str, **fields) -> StakeRecord:
        """Fix recipient/vault/amount data on a record parked for review."""
        unknown = set(fields) - set(CORRECTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be corrected: {sorted(unknown)}")
        if not fields:
            raise ValueError("No fields to correct")
        if "stake_amount" in fields:
            amount = fields["stake_amount"]
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValueError("stake_amount must be a positive integer")

        now = format_timestamp(utc_now())
        with self._connect() as conn:
            with transaction(conn):
                row = self._fetch(conn, escrow_id)
                if row is None:
                    raise RecordNotFoundError(escrow_id)
                if StakeStatus(row["status"]) not in CORRECTABLE_STATUSES:
                    raise InvalidTransitionError(escrow_id, row["status"], "corrected")

                assignments = ", ".join(f"{name} = ?" for name in fields)
                conn.execute(
                    f"UPDATE stakes SET {assignments}, updated_at = ? WHERE escrow_id = ?",
                    list(fields.values()) + [now, escrow_id]
                )
                self._add_event(conn, escrow_id, row["status"], row["status"],
                                detail=f"corrected {', '.join(sorted(fields))}", ts=now)
            row = self._fetch(conn, escrow_id)
        return _row_to_record(row)

    def requeue(self, escrow_id: str, detail: str = "requeued by operator") -> StakeRecord:
        """Send a reviewed record back to the loop with a fresh attempt budget."""
        now = format_timestamp(utc_now())
        with self._connect() as conn:
            with transaction(conn):
                row = self._fetch(conn, escrow_id)
                if row is None:
                    raise RecordNotFoundError(escrow_id)
                current = row["status"]
                if StakeStatus(current) not in REVIEW_STATUSES:
                    raise InvalidTransitionError(escrow_id, current, StakeStatus.ENDED.value)

                conn.execute(
                    "UPDATE stakes SET status = ?, attempts = 0, release_attempted_at = NULL, last_error = NULL, "
                    "updated_at = ? WHERE escrow_id = ?",
                    (StakeStatus.ENDED.value, now, escrow_id)
                )
                self._add_event(conn, escrow_id, current, StakeStatus.ENDED.value, detail=detail, ts=now)
            row = self._fetch(conn, escrow_id)

        logger.log_stake_transition(escrow_id, current, StakeStatus.ENDED.value, detail=detail)
        return _row_to_record(row)

    def resolve(self, escrow_id: str, status, confirmation_ref: str, detail: str = "resolved by operator") -> StakeRecord:
        """Close an ambiguous record after the operator confirmed what happened on the ledger."""
        status = StakeStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Resolution status must be terminal, got {status.value}")
        if not confirmation_ref:
            raise ValueError("confirmation_ref is required to resolve a record")
        return self.update_status(escrow_id, status, confirmation_ref=confirmation_ref, detail=detail)
