"""
Exception taxonomy shared by the store, the collaborator clients and the reconciler.
"""


class Pay2PingError(Exception):
    """Base class for all reconciler errors."""
    pass


# Record store

class StoreError(Pay2PingError):
    pass


class RecordNotFoundError(StoreError):
    def __init__(self, escrow_id: str):
        super().__init__(f"Stake record not found: {escrow_id}")
        self.escrow_id = escrow_id


class DuplicateKeyError(StoreError):
    def __init__(self, escrow_id: str):
        super().__init__(f"Stake record already exists: {escrow_id}")
        self.escrow_id = escrow_id


class InvalidTransitionError(StoreError):
    def __init__(self, escrow_id: str, from_status: str, to_status: str):
        super().__init__(f"Illegal transition for {escrow_id}: {from_status} -> {to_status}")
        self.escrow_id = escrow_id
        self.from_status = from_status
        self.to_status = to_status


class LeaseLostError(StoreError):
    """The caller no longer holds the processing lease on this record."""
    def __init__(self, escrow_id: str, owner: str):
        super().__init__(f"Lease on {escrow_id} is no longer held by {owner}")
        self.escrow_id = escrow_id
        self.owner = owner


class StoreUnavailableError(StoreError):
    """The database could not be opened or queried. Fatal to the current tick."""
    pass


# Attendance verifier

class AttendanceError(Pay2PingError):
    """Any failure to obtain an attendance report. Always retryable."""
    pass


class ReportNotReady(AttendanceError):
    """The participant report does not exist yet (meeting too recent or report disabled)."""
    pass


class AttendanceCheckError(AttendanceError):
    """Unclassified failure from the meeting platform."""
    pass


# Disbursement client

class DisbursementError(Pay2PingError):
    """A release that definitely did not move funds."""
    retryable = True


class ValidationFailure(DisbursementError):
    """Malformed or missing parameters. Needs operator intervention."""
    retryable = False


class SimulationFailure(DisbursementError):
    """The transfer was rejected before submission."""
    pass


class NetworkFailure(DisbursementError):
    """The request never reached the relay, or the relay refused it before acting."""
    pass


class DisbursementOutcomeUnknown(Pay2PingError):
    """
    The release may have landed. Not a DisbursementError on purpose: callers that
    catch DisbursementError to schedule a retry must not catch this one.
    """
    pass
