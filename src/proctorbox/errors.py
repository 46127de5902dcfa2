"""Error taxonomy for proctorbox.

Lifecycle errors propagate to the HTTP boundary, capture errors are folded
into ``CaptureFailed`` values by the capture service.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Categorized error types, used in API payloads and audit events."""
    NONE = "none"
    UNSUPPORTED_SUBJECT = "unsupported_subject"
    IMAGE_BUILD = "image_build"
    PORT_RESOLUTION = "port_resolution"
    RUNTIME_UNAVAILABLE = "runtime_unavailable"
    NAVIGATION_TIMEOUT = "navigation_timeout"
    NAVIGATION = "navigation"
    AUTHENTICATION_TIMEOUT = "authentication_timeout"
    TRUST_DIALOG = "trust_dialog"
    PERMISSION_DENIED = "permission_denied"
    CAPTURE_TIMEOUT = "capture_timeout"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class ProctorboxError(Exception):
    """Base class for every error raised by proctorbox."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    status_code: int = 500


# Lifecycle

class UnsupportedSubject(ProctorboxError):
    category = ErrorCategory.UNSUPPORTED_SUBJECT
    status_code = 400

    def __init__(self, subject: str):
        super().__init__(f"No runtime image defined for subject: {subject}")
        self.subject = subject


class ImageBuildFailed(ProctorboxError):
    category = ErrorCategory.IMAGE_BUILD


class PortResolutionFailed(ProctorboxError):
    category = ErrorCategory.PORT_RESOLUTION


class RuntimeUnavailable(ProctorboxError):
    """The container runtime could not be reached or did not answer in time."""
    category = ErrorCategory.RUNTIME_UNAVAILABLE


# Capture

class CaptureError(ProctorboxError):
    """Base class for failures while driving a capture."""


class NavigationTimeout(CaptureError):
    category = ErrorCategory.NAVIGATION_TIMEOUT


class NavigationFailed(CaptureError):
    """The endpoint refused the connection or the page failed to load."""
    category = ErrorCategory.NAVIGATION


class AuthenticationTimeout(CaptureError):
    category = ErrorCategory.AUTHENTICATION_TIMEOUT


class TrustDialogUnresolved(CaptureError):
    """Recorded on the drive report; never raised out of the driver."""
    category = ErrorCategory.TRUST_DIALOG


class PermissionDenied(CaptureError):
    category = ErrorCategory.PERMISSION_DENIED


class CaptureTimeout(CaptureError):
    category = ErrorCategory.CAPTURE_TIMEOUT


class StorageError(ProctorboxError):
    category = ErrorCategory.STORAGE
