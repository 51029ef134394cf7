"""
In-process collaborators for development mode and tests.
"""

import threading
import uuid
from typing import Dict, List, Optional, Tuple

from .base import IAttendanceVerifier, IDisbursementClient
from .disbursement import validate_release_params


class MockAttendanceVerifier(IAttendanceVerifier):
    """
    Serves canned participant lists.

    Meetings without a canned report raise `missing` when it is set, otherwise
    they report that nobody attended.
    """

    def __init__(self, reports: Dict[str, List[str]] = None, failures: Dict[str, Exception] = None,
                 missing: Optional[Exception] = None):
        self.reports = dict(reports or {})
        self.failures = dict(failures or {})
        self.missing = missing
        self.calls: List[str] = []

    def get_attendees(self, meeting_id: str) -> List[str]:
        self.calls.append(meeting_id)
        if meeting_id in self.failures:
            raise self.failures[meeting_id]
        if meeting_id not in self.reports and self.missing is not None:
            raise self.missing
        return list(self.reports.get(meeting_id, []))


class MockDisbursementClient(IDisbursementClient):
    """Records releases and answers with a fake confirmation reference."""

    def __init__(self, failures: Dict[str, Exception] = None):
        self.failures = dict(failures or {})
        self.calls: List[Tuple[str, str, str, int]] = []
        self._lock = threading.Lock()

    def release(self, escrow_id: str, vault_id: str, recipient_id: str, amount: int) -> str:
        with self._lock:
            self.calls.append((escrow_id, vault_id, recipient_id, amount))
        if escrow_id in self.failures:
            raise self.failures[escrow_id]
        validate_release_params(escrow_id, vault_id, recipient_id, amount)
        return f"mock-{uuid.uuid4().hex[:16]}"
