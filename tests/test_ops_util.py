"""
Operator CLI commands against a temporary database.
"""

from datetime import timedelta

import pytest

from conftest import NOW, make_record
from pay2ping.core.dao import StakeStore
from pay2ping.core.schema import StakeStatus
from scripts import ops_util


@pytest.fixture
def cli_store(tmp_path, monkeypatch):
    """Point the CLI at a temporary database."""
    db_path = str(tmp_path / "cli.db")
    monkeypatch.setenv("DB_PATH", db_path)
    return StakeStore(db_path)


def park(store, escrow_id, status):
    store.claim(escrow_id, "w", NOW, timedelta(minutes=10))
    store.update_status(escrow_id, status, owner="w", detail="missing vault_id")


class TestOpsCli:
    def test_review_empty(self, cli_store, capsys):
        """Test an empty review queue."""
        ops_util.main(["review"])
        assert "Review queue is empty" in capsys.readouterr().out

    def test_review_lists_parked(self, cli_store, capsys):
        """Test parked records are listed with masked contacts."""
        cli_store.append(make_record())
        park(cli_store, "esc-1", StakeStatus.ERROR_RELEASE_MISSING_DATA)

        ops_util.main(["review"])

        out = capsys.readouterr().out
        assert "esc-1" in out
        assert "missing vault_id" in out
        assert "Alice@Example.com" not in out

    def test_correct_then_requeue(self, cli_store, capsys):
        """Test the correct and requeue commands."""
        cli_store.append(make_record(vault_id=None))
        park(cli_store, "esc-1", StakeStatus.ERROR_RELEASE_MISSING_DATA)

        ops_util.main(["correct", "esc-1", "--vault-id", "V9"])
        ops_util.main(["requeue", "esc-1"])

        record = cli_store.get("esc-1")
        assert record.vault_id == "V9"
        assert record.status == StakeStatus.ENDED

    def test_resolve(self, cli_store):
        """Test resolving an ambiguous release."""
        cli_store.append(make_record())
        park(cli_store, "esc-1", StakeStatus.ERROR_RELEASE_UNKNOWN)

        ops_util.main(["resolve", "esc-1", "claimed", "sig-ledger"])

        assert cli_store.get("esc-1").status == StakeStatus.CLAIMED

    def test_requeue_refused_exits(self, cli_store, capsys):
        """Test a refused action exits non-zero."""
        cli_store.append(make_record())
        with pytest.raises(SystemExit) as exc_info:
            ops_util.main(["requeue", "esc-1"])
        assert exc_info.value.code == 1

    def test_show_history(self, cli_store, capsys):
        """Test a record's history is printed."""
        cli_store.append(make_record())
        ops_util.main(["show", "esc-1"])
        assert "- -> scheduled" in capsys.readouterr().out
