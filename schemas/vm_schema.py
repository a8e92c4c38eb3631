from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NetworkMode(str, Enum):
    BRIDGED = "Bridged"
    NAT = "NAT"
    ISOLATED = "Isolated"


class VmState(str, Enum):
    PENDING = "Pending"
    IMAGE_PREPARING = "ImagePreparing"
    CREATING = "Creating"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPED = "Stopped"
    FAILED = "Failed"
    DELETED = "Deleted"


# Allowed forward edges of the lifecycle. Failed is reachable from every
# live state; Failed -> Pending only happens through resubmission.
TRANSITIONS: dict[VmState, frozenset[VmState]] = {
    VmState.PENDING: frozenset({VmState.IMAGE_PREPARING, VmState.FAILED, VmState.DELETED}),
    VmState.IMAGE_PREPARING: frozenset({VmState.CREATING, VmState.FAILED, VmState.DELETED}),
    VmState.CREATING: frozenset({VmState.STARTING, VmState.FAILED, VmState.DELETED}),
    VmState.STARTING: frozenset({VmState.RUNNING, VmState.FAILED, VmState.DELETED}),
    VmState.RUNNING: frozenset({VmState.STOPPED, VmState.FAILED, VmState.DELETED}),
    VmState.STOPPED: frozenset({VmState.STARTING, VmState.FAILED, VmState.DELETED}),
    VmState.FAILED: frozenset({VmState.PENDING, VmState.DELETED}),
    VmState.DELETED: frozenset(),
}

PROVISIONING_STATES = frozenset(
    {VmState.PENDING, VmState.IMAGE_PREPARING, VmState.CREATING, VmState.STARTING}
)


def can_transition(current: VmState, target: VmState) -> bool:
    return target in TRANSITIONS[current]


class DomainStatus(str, Enum):
    NO_STATE = "NoState"
    RUNNING = "Running"
    BLOCKED = "Blocked"
    PAUSED = "Paused"
    SHUTTING_DOWN = "ShuttingDown"
    SHUT_OFF = "ShutOff"
    CRASHED = "Crashed"
    SUSPENDED = "Suspended"
    UNKNOWN = "Unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisionRequest(BaseModel):
    """
    Declarative VM creation request.

    Numeric bounds are checked by RequestValidator, not here.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Unique VM name")
    memory_mib: int = Field(..., alias="memoryMiB", description="RAM in MiB")
    vcpu_count: int = Field(..., alias="vcpuCount", description="Number of virtual CPUs")
    disk_size_gib: int = Field(..., alias="diskSizeGiB", description="Disk size in GiB")
    image_source_path: Optional[str] = Field(
        default=None,
        alias="imageSourcePath",
        description="Existing image used as copy-on-write backing file",
    )
    network_mode: NetworkMode = Field(..., alias="networkMode")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiskImage(CamelModel):
    path: str
    size_gib: int = Field(..., alias="sizeGiB")
    backing_source: Optional[str] = None
    checksum: Optional[str] = None
    format: str = "qcow2"


class DomainHandle(CamelModel):
    name: str
    uuid: Optional[str] = None


class DomainSpec(CamelModel):
    """Everything the control plane needs to define a domain."""

    name: str
    memory_mib: int = Field(..., alias="memoryMiB")
    vcpu_count: int
    disk_path: str
    disk_format: str = "qcow2"
    network_mode: NetworkMode

    @classmethod
    def from_request(cls, request: ProvisionRequest, image: DiskImage) -> "DomainSpec":
        return cls(
            name=request.name,
            memory_mib=request.memory_mib,
            vcpu_count=request.vcpu_count,
            disk_path=image.path,
            disk_format=image.format,
            network_mode=request.network_mode,
        )


class VmRecord(CamelModel):
    """
    Lifecycle record of one VM name, persisted by InventoryStore.

    `in_progress` is the reservation marker: it is set while a worker owns
    the name and is independent from `state`.
    """

    name: str
    request: ProvisionRequest
    state: VmState = VmState.PENDING
    last_error: Optional[str] = None
    attempt: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    in_progress: bool = False
    cancel_requested: bool = False
    delete_requested: bool = False
    rollback_incomplete: bool = False
    disk_image: Optional[DiskImage] = None
    domain: Optional[DomainHandle] = None

    def summary(self) -> dict:
        return {"name": self.name, "state": self.state.value}


class ValidationErrorSchema(BaseModel):
    field: str
    reason: str
