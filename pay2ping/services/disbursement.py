"""
Disbursement relay client.

The relay owns the signing key and submits the release instruction to the ledger.
This client only decides, from the relay's answer, whether funds moved, did not
move, or might have moved.
"""

from typing import Any, Dict

import requests
from urllib3.exceptions import MaxRetryError, NewConnectionError

from util.logging import logger

from ..core.errors import (
    DisbursementOutcomeUnknown,
    NetworkFailure,
    SimulationFailure,
    ValidationFailure,
)
from .base import IDisbursementClient

# Refused before the relay acted on the request
DEFINITELY_NOT_SENT_STATUSES = {429, 503}
# The relay may have submitted before failing
AMBIGUOUS_STATUSES = {500, 502, 504}


def _never_connected(exc: requests.ConnectionError) -> bool:
    """True when the request provably never reached the relay."""
    if isinstance(exc, requests.ConnectTimeout):
        return True
    reason = exc.args[0] if exc.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, NewConnectionError)


def validate_release_params(escrow_id: str, vault_id: str, recipient_id: str, amount: int):
    """Raise ValidationFailure for anything the ledger program would reject outright."""
    missing = [name for name, value in (("escrow_id", escrow_id), ("vault_id", vault_id),
                                        ("recipient_id", recipient_id)) if not value or not str(value).strip()]
    if missing:
        raise ValidationFailure(f"Missing required release parameters: {', '.join(missing)}")
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationFailure(f"amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise ValidationFailure("amount must be positive")


class HttpDisbursementClient(IDisbursementClient):
    """Posts release requests to the signing relay."""

    def __init__(self, base_url: str, token: str = None, timeout: float = 30.0, connect_timeout: float = 5.0,
                 session: requests.Session = None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.session = session or requests.Session()

    def _headers(self, escrow_id: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Idempotency-Key": escrow_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def release(self, escrow_id: str, vault_id: str, recipient_id: str, amount: int) -> str:
        validate_release_params(escrow_id, vault_id, recipient_id, amount)
        if not self.base_url:
            raise ValidationFailure("Disbursement relay URL is not configured")

        payload = {
            "escrow_id": escrow_id,
            "vault_id": vault_id,
            "recipient_id": recipient_id,
            "amount": amount,
        }

        try:
            response = self.session.post(
                f"{self.base_url}/release",
                json=payload,
                headers=self._headers(escrow_id),
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.ConnectionError as e:
            if _never_connected(e):
                raise NetworkFailure(f"Could not reach disbursement relay: {e}") from e
            # connection dropped after the request went out
            raise DisbursementOutcomeUnknown(f"Relay connection lost for {escrow_id}: {e}") from e
        except requests.Timeout as e:
            raise DisbursementOutcomeUnknown(f"Relay did not answer for {escrow_id}: {e}") from e
        except requests.RequestException as e:
            raise DisbursementOutcomeUnknown(f"Relay request for {escrow_id} failed mid-flight: {e}") from e

        return self._interpret(escrow_id, response)

    def _interpret(self, escrow_id: str, response: requests.Response) -> str:
        body: Dict[str, Any]
        try:
            body = response.json()
            if not isinstance(body, dict):
                body = {}
        except ValueError:
            body = {}

        status = response.status_code
        message = body.get("error") or body.get("message") or f"HTTP {status}"

        if status in (200, 201):
            signature = body.get("signature")
            if not signature:
                raise DisbursementOutcomeUnknown(f"Relay accepted release for {escrow_id} without a signature")
            return signature

        if status in (400, 422):
            raise ValidationFailure(f"Relay rejected release for {escrow_id}: {message}")
        if status == 409 or body.get("type") == "simulation":
            raise SimulationFailure(f"Release for {escrow_id} failed simulation: {message}")
        if status in DEFINITELY_NOT_SENT_STATUSES:
            raise NetworkFailure(f"Relay unavailable for {escrow_id}: {message}")
        if status in AMBIGUOUS_STATUSES:
            raise DisbursementOutcomeUnknown(f"Relay error for {escrow_id} after submission may have begun: {message}")

        logger.warning(f"Unexpected relay status {status} for {escrow_id}")
        raise DisbursementOutcomeUnknown(f"Unexpected relay status {status} for {escrow_id}: {message}")
