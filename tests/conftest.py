"""
Shared fixtures: a throwaway SQLite store per test and record factories.
"""

from datetime import datetime, timedelta, timezone

import pytest

from pay2ping.core.dao import StakeStore
from pay2ping.core.schema import StakeRecord, format_timestamp

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    """Fresh store backed by a temporary database file."""
    return StakeStore(str(tmp_path / "stakes.db"))


def make_record(escrow_id="esc-1", ended_minutes_ago=30, now=NOW, **overrides) -> StakeRecord:
    fields = dict(
        escrow_id=escrow_id,
        initializer_id="init-wallet",
        beneficiary_id="bene-wallet",
        vault_id="vault-1",
        stake_amount=5_000_000,
        attendee_contact="Alice@Example.com",
        meeting_id="98765",
        meeting_end_time=format_timestamp(now - timedelta(minutes=ended_minutes_ago)),
    )
    fields.update(overrides)
    return StakeRecord(**fields)


@pytest.fixture
def record_factory():
    return make_record
