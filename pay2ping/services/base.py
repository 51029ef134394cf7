"""
Collaborator contracts consumed by the reconciler.
"""

from abc import ABC, abstractmethod
from typing import List


class IAttendanceVerifier(ABC):
    """Abstract interface for meeting attendance sources."""

    @abstractmethod
    def get_attendees(self, meeting_id: str) -> List[str]:
        """
        Return contact identifiers (emails) of everyone who attended.

        No ordering guarantee. Raises ReportNotReady when the report does not
        exist yet and AttendanceCheckError for anything else.
        """
        pass


class IDisbursementClient(ABC):
    """Abstract interface for releasing escrowed funds."""

    @abstractmethod
    def release(self, escrow_id: str, vault_id: str, recipient_id: str, amount: int) -> str:
        """
        Release amount from vault_id to recipient_id and return a confirmation reference.

        Raises ValidationFailure, SimulationFailure or NetworkFailure when the
        transfer definitely did not happen, and DisbursementOutcomeUnknown when it
        may have.
        """
        pass
