"""
Custom Exceptions for AquaControl

This module defines the exception classes used across the key custody
ledger. Failures local to a single frame or lookup never raise (see
``models.Unresolved``); everything here is either a guard at a component
boundary or a failure that compromises a whole operation or session.
"""

from typing import List, Optional, Tuple


class AquaControlException(Exception):
    """
    Base exception for AquaControl

    All custom exceptions in the system inherit from this base class
    so the web layer can map them to responses in one place.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize AquaControl exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class DataValidationException(AquaControlException):
    """
    Raised when data validation fails

    Used for malformed members files and any input that does not meet
    the ledger's validation criteria.
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize data validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error


class MemberNotFoundException(DataValidationException):
    """
    Raised when an append names a member that is not in the registry

    A correctly functioning resolver never lets this happen, but the
    ledger still guards against it.
    """

    def __init__(self, member_id: str):
        super().__init__("member_id", f"Member with ID '{member_id}' not found")
        self.error_code = "MEMBER_NOT_FOUND"
        self.member_id = member_id


class EventNotFoundException(AquaControlException):
    """Raised when removing a usage event that is already gone"""

    def __init__(self, event_id: str):
        message = f"Usage event with ID '{event_id}' not found"
        super().__init__(message, "EVENT_NOT_FOUND")
        self.event_id = event_id


class ConfirmationRequiredException(AquaControlException):
    """Raised when an irreversible operation is requested without confirmation"""

    def __init__(self, operation: str):
        message = f"Operation '{operation}' is irreversible and must be confirmed"
        super().__init__(message, "CONFIRMATION_REQUIRED")
        self.operation = operation


class ActorUnavailableException(AquaControlException):
    """Raised when a ledger operation is attempted before an actor is known"""

    def __init__(self):
        super().__init__(
            "No operator identity available yet, ledger operations are disabled",
            "ACTOR_UNAVAILABLE",
        )


class DataAccessException(AquaControlException):
    """
    Raised when data access operations fail

    This is the transport failure of the backing store. It is reported
    to the user as transient and never retried automatically; the
    failed operation is safe to re-issue.
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize data access exception

        Args:
            operation: The operation that failed (e.g., 'read', 'create')
            details: Detailed error information
        """
        message = f"Data access error during {operation}: {details}"
        super().__init__(message, "DATA_ACCESS_ERROR")
        self.operation = operation
        self.details = details


class SubscriptionException(AquaControlException):
    """
    Raised (and delivered to ``on_error``) when a live ledger feed breaks

    Observers must treat their cached snapshot as stale until they
    re-subscribe successfully.
    """

    def __init__(self, details: str):
        super().__init__(f"Live ledger feed interrupted: {details}", "SUBSCRIPTION_ERROR")
        self.details = details


class CameraAcquisitionException(AquaControlException):
    """
    Raised when every camera acquisition strategy failed

    Terminal for the scan session that raised it.
    """

    def __init__(self, attempts: Optional[List[Tuple[str, str]]] = None):
        """
        Initialize camera acquisition exception

        Args:
            attempts: (facing mode, reason) pairs, one per failed strategy
        """
        self.attempts = list(attempts or [])
        tried = ", ".join(f"{mode}: {reason}" for mode, reason in self.attempts)
        message = "No camera could be started"
        if tried:
            message = f"{message} ({tried})"
        super().__init__(message, "CAMERA_ACQUISITION_ERROR")


class ScanSessionBusyException(AquaControlException):
    """Raised when a scan session is opened while another one holds the camera"""

    def __init__(self):
        super().__init__("A scan session is already active", "SCAN_SESSION_BUSY")


class ExportException(AquaControlException):
    """Raised when an event cannot be written to the delimited export"""

    def __init__(self, field_name: str, value: str):
        message = (
            f"Field '{field_name}' contains a delimiter or line break and "
            f"cannot be exported unquoted: {value!r}"
        )
        super().__init__(message, "EXPORT_ERROR")
        self.field_name = field_name
        self.value = value


class CameraError(AquaControlException):
    """Raised by a camera backend when one device cannot be started"""

    def __init__(self, device: str, reason: str):
        super().__init__(f"Camera {device} unavailable: {reason}", "CAMERA_ERROR")
        self.device = device
        self.reason = reason


class ScanSessionStateException(AquaControlException):
    """Raised when a finished scan session is asked to start again"""

    def __init__(self, status: str):
        message = f"Scan session is {status}; open a new session to scan again"
        super().__init__(message, "SCAN_SESSION_STATE")
        self.status = status
