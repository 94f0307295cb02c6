"""
Custom Exceptions for the BMM Portal

This module defines custom exception classes that provide specific
error handling for the failure scenarios of the member flow and the
check-in desk. Duplicate check-ins are deliberately absent: an
"already checked in" outcome is a result, not an error.
"""

from typing import Optional


class BMMPortalException(Exception):
    """
    Base exception for the BMM Portal

    All custom exceptions in the portal inherit from this base class
    so the web layer can map them to responses in one place.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize BMM Portal exception

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


class MemberNotFoundException(BMMPortalException):
    """
    Raised when a member token does not resolve to a member

    The backend answered, but there is no member behind the link the
    member followed from their email or text message.
    """

    def __init__(self, token: str):
        """
        Initialize member not found exception

        Args:
            token: The member token that was not found
        """
        message = f"No member found for token '{token}'"
        super().__init__(message, "MEMBER_NOT_FOUND")
        self.token = token


class DataValidationException(BMMPortalException):
    """
    Raised when data validation fails

    Validation happens before any network call, so a raised validation
    error guarantees the backend was never contacted.
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


class DataAccessException(BMMPortalException):
    """
    Raised when data access operations fail

    This exception is thrown when there are issues reading from
    or writing to local storage (JSON files, Redis).
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize data access exception

        Args:
            operation: The operation that failed (e.g., 'read', 'write')
            details: Detailed error information
        """
        message = f"Data access error during {operation}: {details}"
        super().__init__(message, "DATA_ACCESS_ERROR")
        self.operation = operation
        self.details = details


class BackendException(BMMPortalException):
    """
    Raised when the event backend fails or refuses a request

    Covers transport failures, non-2xx responses and 200 responses whose
    envelope does not report success. ``message`` is the server's own
    message whenever the response carried one.
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 server_message: Optional[str] = None):
        """
        Initialize backend exception

        Args:
            message: Human-readable error message
            status_code: HTTP status code, None for transport failures
            server_message: The ``message`` field of the response body, if any
        """
        super().__init__(server_message or message, "BACKEND_ERROR")
        self.status_code = status_code
        self.server_message = server_message

    @property
    def already_exists(self) -> bool:
        """True when the backend reports a conflict with an existing record"""
        if self.status_code == 409:
            return True
        return bool(self.server_message and "already exists" in self.server_message)


class InvalidTransitionException(BMMPortalException):
    """Raised when an event is dispatched in a state that does not accept it"""

    def __init__(self, state: str, event: str):
        message = f"Cannot handle '{event}' while in state {state}"
        super().__init__(message, "INVALID_TRANSITION")
        self.state = state
        self.event = event


class NoEventSelectedException(BMMPortalException):
    """Raised when a scan is submitted before an event has been selected"""

    def __init__(self):
        super().__init__("Please select an event first before scanning", "NO_EVENT_SELECTED")


class InvalidScannerLinkException(BMMPortalException):
    """Raised when a venue scanner link fails validation or was never validated"""

    def __init__(self, reason: str = "Invalid or expired scan link"):
        super().__init__(reason, "INVALID_SCANNER_LINK")


class CameraUnavailableException(BMMPortalException):
    """
    Raised when the camera cannot be used for scanning

    Callers should offer image upload as a fallback whenever they
    catch this (or one of its subclasses).
    """

    def __init__(self, message: str = "Unable to access camera. Please check permissions or use image upload.",
                 error_code: str = "CAMERA_UNAVAILABLE"):
        super().__init__(message, error_code)


class CameraPermissionException(CameraUnavailableException):
    """Raised when access to the camera is denied (NotAllowedError)"""

    def __init__(self, device: str = None):
        message = "Camera permission denied. Allow camera access, then try again."
        if device is not None:
            message = f"Camera permission denied for device {device}. Allow camera access, then try again."
        super().__init__(message, "CAMERA_PERMISSION_DENIED")
        self.device = device


class CameraNotFoundException(CameraUnavailableException):
    """Raised when no camera device is present (NotFoundError)"""

    def __init__(self, device: str = None):
        message = "No camera device found. Please connect a camera and try again."
        if device is not None:
            message = f"No camera device found at {device}. Please connect a camera and try again."
        super().__init__(message, "CAMERA_NOT_FOUND")
        self.device = device


class DecodeException(BMMPortalException):
    """Base class for QR decoding failures on still images"""


class NoCodeFoundException(DecodeException):
    """Raised when an image was read but contains no QR code"""

    def __init__(self):
        super().__init__("No QR code found in the image", "NO_CODE_FOUND")


class DecoderInitException(DecodeException):
    """Raised when the decoder cannot read the supplied image at all"""

    def __init__(self, details: str):
        super().__init__(f"Scanner initialization failed: {details}", "DECODER_INIT_FAILED")
        self.details = details
