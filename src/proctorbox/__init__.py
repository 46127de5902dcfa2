"""Proctorbox – per-user code-server sandboxes with time-boxed sessions and integrity captures"""

__version__ = "0.1.0"

from .config import CaptureConfig, RuntimeConfig, SessionConfig, Settings, load_settings
from .errors import (
    AuthenticationTimeout,
    CaptureError,
    CaptureTimeout,
    ErrorCategory,
    ImageBuildFailed,
    NavigationFailed,
    NavigationTimeout,
    PermissionDenied,
    PortResolutionFailed,
    ProctorboxError,
    RuntimeUnavailable,
    StorageError,
    TrustDialogUnresolved,
    UnsupportedSubject,
)
from .events import AuditTrail, Event, EventStore, EventType
from .models import (
    CaptureArtifact,
    CaptureFailed,
    CaptureJob,
    RawFrame,
    Resolution,
    SandboxRecord,
    SandboxStatus,
    SessionState,
    SessionStatus,
    SourceKind,
    TriggerKind,
)
from .network import PortAllocator
from .registry import SandboxRegistry
from .runtime import ContainerRuntime, ContainerSpec, DockerRuntime
from .sandbox_manager import SandboxLifecycleManager
from .session import CaptureScheduler, SessionEnforcer, SessionHooks, SessionManager

__all__ = [
    "__version__",
    # Config
    "CaptureConfig",
    "RuntimeConfig",
    "SessionConfig",
    "Settings",
    "load_settings",
    # Errors
    "AuthenticationTimeout",
    "CaptureError",
    "CaptureTimeout",
    "ErrorCategory",
    "ImageBuildFailed",
    "NavigationFailed",
    "NavigationTimeout",
    "PermissionDenied",
    "PortResolutionFailed",
    "ProctorboxError",
    "RuntimeUnavailable",
    "StorageError",
    "TrustDialogUnresolved",
    "UnsupportedSubject",
    # Events
    "AuditTrail",
    "Event",
    "EventStore",
    "EventType",
    # Models
    "CaptureArtifact",
    "CaptureFailed",
    "CaptureJob",
    "RawFrame",
    "Resolution",
    "SandboxRecord",
    "SandboxStatus",
    "SessionState",
    "SessionStatus",
    "SourceKind",
    "TriggerKind",
    # Lifecycle
    "ContainerRuntime",
    "ContainerSpec",
    "DockerRuntime",
    "PortAllocator",
    "SandboxLifecycleManager",
    "SandboxRegistry",
    # Sessions
    "CaptureScheduler",
    "SessionEnforcer",
    "SessionHooks",
    "SessionManager",
]
