"""
Structured logging for the reconciler, the collaborator clients and the ops API.
Attendee contacts are masked before they reach any handler.
"""

import logging
from typing import Any, Dict, List, Optional


SENSITIVE_FIELDS = ['attendee_contact', 'contact', 'email', 'token', 'secret', 'password', 'authorization']


def mask_contact(contact: Optional[str]) -> str:
    """Mask an email-like contact: 'alice@x.com' -> 'a***@x.com'."""
    if not contact:
        return "<none>"
    contact = contact.strip()
    if "@" not in contact:
        return contact[:1] + "***"
    local, _, domain = contact.partition("@")
    return f"{local[:1]}***@{domain}"


class StructuredLogger:
    """Structured logger for stake lifecycle, collaborator calls and heartbeat ticks."""

    def __init__(self, name: str = "pay2ping"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_stake_transition(self, escrow_id: str, from_status: Optional[str], to_status: str,
                             confirmation_ref: str = None, detail: str = None):
        """Log a status transition of one stake record."""
        details = {"escrow_id": escrow_id, "from": from_status, "to": to_status}
        if confirmation_ref:
            details["confirmation_ref"] = confirmation_ref
        if detail:
            details["detail"] = detail[:100]

        level = logging.WARNING if to_status.startswith("error") or to_status == "needs_review" else logging.INFO
        self.log_operation("stake.transition", to_status, details, level=level)

    def log_attendance_check(self, escrow_id: str, meeting_id: str, contact: str,
                             attended: Optional[bool], participant_count: int = 0, error: str = None):
        """Log the outcome of an attendance lookup."""
        details = {
            "escrow_id": escrow_id,
            "meeting_id": meeting_id,
            "contact": mask_contact(contact),
            "participants": participant_count,
        }
        if error:
            details["error"] = error[:100]
            self.log_operation("attendance.check", "failed", details, level=logging.WARNING)
            return

        details["attended"] = attended
        self.log_operation("attendance.check", "success", details)

    def log_release(self, escrow_id: str, recipient_id: str, amount: int, status: str = "success",
                    confirmation_ref: str = None, error: str = None):
        """Log a disbursement attempt."""
        details = {"escrow_id": escrow_id, "recipient_id": recipient_id, "amount": amount}
        if confirmation_ref:
            details["confirmation_ref"] = confirmation_ref
        if error:
            details["error"] = error[:100]

        if status == "success":
            level = logging.INFO
        elif status == "unknown":
            level = logging.ERROR
        else:
            level = logging.WARNING
        self.log_operation("disbursement.release", status, details, level=level)

    def log_tick(self, report: Dict[str, Any], status: str = "success"):
        """Log the summary of one reconciliation tick."""
        summary = {k: v for k, v in report.items() if k not in ("errors", "started_at", "completed_at")}
        if report.get("errors"):
            summary["error_count"] = len(report["errors"])
        self.log_operation("reconcile.tick", status, summary)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success",
                           details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        level = logging.ERROR if status == "failed" else logging.INFO
        self.log_operation(f"heartbeat.{task_name}", status, log_details, level=level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def exception(self, message: str) -> None:
        self.logger.exception(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """Operator-facing audit record (API corrections, resolutions, requeues)."""
    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            elif k in ('attendee_contact', 'contact', 'email') and isinstance(v, str):
                sanitized[k] = mask_contact(v)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
