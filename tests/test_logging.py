"""
Structured logging helpers: contact masking and audit sanitization.
"""

import logging

import pytest

from util.logging import audit_event, logger, mask_contact, sanitize_payload


class TestMasking:
    @pytest.mark.parametrize("contact,expected", [
        ("alice@example.com", "a***@example.com"),
        ("  Bob@Example.com ", "B***@Example.com"),
        ("+15551234567", "+***"),
        ("", "<none>"),
        (None, "<none>"),
    ])
    def test_mask_contact(self, contact, expected):
        """Test contacts keep only their first character and domain."""
        assert mask_contact(contact) == expected

    def test_sanitize_payload(self):
        """Test contact fields are masked and secrets redacted."""
        payload = {
            "escrow_id": "E1",
            "attendee_contact": "alice@example.com",
            "token": "abc",
            "nested": {"email": "bob@example.com", "vault_id": "V1"},
        }

        sanitized = sanitize_payload(payload)

        assert sanitized["escrow_id"] == "E1"
        assert sanitized["attendee_contact"] == "a***@example.com"
        assert sanitized["token"] == "[REDACTED]"
        assert sanitized["nested"] == {"email": "b***@example.com", "vault_id": "V1"}

    def test_long_strings_truncated(self):
        """Test audit payload strings are capped."""
        assert sanitize_payload("x" * 150) == "x" * 100 + "..."


class TestStructuredLogger:
    """Test the domain log helpers."""

    def test_attendance_check_never_logs_raw_contact(self, caplog):
        """Test attendee emails do not reach the log output."""
        with caplog.at_level(logging.INFO, logger="pay2ping"):
            logger.log_attendance_check("E1", "M1", "alice@example.com", True, participant_count=3)

        assert "alice@example.com" not in caplog.text
        assert "a***@example.com" in caplog.text

    def test_error_transition_logged_as_warning(self, caplog):
        """Test error states are raised to WARNING."""
        with caplog.at_level(logging.INFO, logger="pay2ping"):
            logger.log_stake_transition("E1", "processing", "error_release_failed", detail="NetworkFailure")
            logger.log_stake_transition("E2", "processing", "refunded", confirmation_ref="sig")

        assert [r.levelno for r in caplog.records] == [logging.WARNING, logging.INFO]

    def test_unknown_release_logged_as_error(self, caplog):
        """Test an ambiguous release is logged at ERROR."""
        with caplog.at_level(logging.INFO, logger="pay2ping"):
            logger.log_release("E1", "R1", 10, status="unknown", error="read timeout")

        assert caplog.records[-1].levelno == logging.ERROR

    def test_tick_summary(self, caplog):
        """Test the tick summary carries counts but not the error text."""
        report = {"selected": 2, "refunded": 1, "errors": ["E2: lease lost"], "started_at": "t"}
        with caplog.at_level(logging.INFO, logger="pay2ping"):
            logger.log_tick(report)

        assert "reconcile.tick" in caplog.text
        assert "'error_count': 1" in caplog.text
        assert "lease lost" not in caplog.text

    def test_audit_event(self, caplog):
        """Test operator actions are audited with sanitized payloads."""
        with caplog.at_level(logging.INFO, logger="pay2ping"):
            audit_event("stake.corrected", {"escrow_id": "E1"}, payload={"contact": "alice@example.com"})

        assert "stake.corrected" in caplog.text
        assert "alice@example.com" not in caplog.text
