from enum import Enum
from typing import Optional


class ProvisioningError(Exception):
    """Base class for every error raised by the provisioning core."""

    retryable = False


class ValidationError(ProvisioningError):
    """A ProvisionRequest was rejected before any control-plane call."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> dict:
        return {"field": self.field, "reason": self.reason}


class ImageErrorKind(str, Enum):
    CONFLICT = "Conflict"
    IO_FAILURE = "IOFailure"


class ImageError(ProvisioningError):
    def __init__(self, kind: ImageErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind == ImageErrorKind.IO_FAILURE


class ControlPlaneErrorKind(str, Enum):
    TRANSIENT = "Transient"
    PERMANENT = "Permanent"
    NOT_FOUND = "NotFound"


class ControlPlaneError(ProvisioningError):
    """
    Classified failure of a hypervisor call.

    Transient errors (timeouts, lost connections, busy resources) are retried
    with backoff; NotFound lets stop/destroy treat the domain as already gone.
    """

    def __init__(
        self,
        kind: ControlPlaneErrorKind,
        message: str,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.operation = operation

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind == ControlPlaneErrorKind.TRANSIENT

    @property
    def not_found(self) -> bool:
        return self.kind == ControlPlaneErrorKind.NOT_FOUND


class RecordNotFoundError(ProvisioningError):
    def __init__(self, name: str) -> None:
        super().__init__(f"VM '{name}' not found")
        self.name = name


class InvalidTransitionError(ProvisioningError):
    pass


class OrchestrationBusyError(ProvisioningError):
    def __init__(self, name: str) -> None:
        super().__init__(f"VM '{name}' has an operation in progress")
        self.name = name
