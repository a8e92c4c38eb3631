from abc import ABC, abstractmethod

from schemas.vm_schema import DomainHandle, DomainSpec, DomainStatus


class VirtControlClient(ABC):
    """
    The only boundary between the orchestrator and a real hypervisor.

    Implementations raise core.errors.ControlPlaneError, classified as
    Transient, Permanent or NotFound. Operations are idempotent where the
    control plane allows it: starting a running domain or stopping a shut
    off one succeeds without doing anything.
    """

    @abstractmethod
    def create_domain(self, spec: DomainSpec) -> DomainHandle:
        ...

    @abstractmethod
    def start_domain(self, handle: DomainHandle) -> None:
        ...

    @abstractmethod
    def stop_domain(self, handle: DomainHandle, graceful: bool = True) -> None:
        ...

    @abstractmethod
    def destroy_domain(self, handle: DomainHandle) -> None:
        """Power off (if needed) and undefine the domain."""

    @abstractmethod
    def get_status(self, handle: DomainHandle) -> DomainStatus:
        ...

    @abstractmethod
    def list_domains(self) -> list[str]:
        ...
