"""Shared test fixtures: fake control plane, fake image provisioner, orchestrators."""

from __future__ import annotations

import os
import tempfile

# settings create their directories at import time; keep them out of the repo
os.environ.setdefault("VM_MANAGER_DATA_DIR", tempfile.mkdtemp(prefix="vm-provisioner-tests-"))

import threading  # noqa: E402
import time  # noqa: E402
from pathlib import Path  # noqa: E402

import pytest  # noqa: E402

from core.errors import ControlPlaneError, ControlPlaneErrorKind  # noqa: E402
from core.image_provisioner import ImageProvisioner  # noqa: E402
from core.inventory import InventoryStore  # noqa: E402
from core.orchestrator import ProvisioningOrchestrator  # noqa: E402
from core.validator import RequestValidator  # noqa: E402
from core.virt_client import VirtControlClient  # noqa: E402
from schemas.vm_schema import (  # noqa: E402
    DiskImage,
    DomainHandle,
    DomainSpec,
    DomainStatus,
    NetworkMode,
    ProvisionRequest,
)


class FakeControlClient(VirtControlClient):
    """In-memory control plane with a call log and scripted failures."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.domains: dict[str, DomainStatus] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.delays: dict[str, float] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    def _enter(self, operation: str, name: str | None) -> None:
        with self._lock:
            self.calls.append((operation, name))
            pending = self.failures.get(operation)
            error = pending.pop(0) if pending else None
        delay = self.delays.get(operation)
        if delay:
            time.sleep(delay)
        if error is not None:
            raise error

    def _require(self, operation: str, name: str) -> None:
        if name not in self.domains:
            raise ControlPlaneError(
                ControlPlaneErrorKind.NOT_FOUND,
                f"{operation} failed: no domain '{name}'",
                operation=operation,
            )

    def create_domain(self, spec: DomainSpec) -> DomainHandle:
        self._enter("create_domain", spec.name)
        self.domains.setdefault(spec.name, DomainStatus.SHUT_OFF)
        return DomainHandle(name=spec.name, uuid=f"uuid-{spec.name}")

    def start_domain(self, handle: DomainHandle) -> None:
        self._enter("start_domain", handle.name)
        self._require("start_domain", handle.name)
        self.domains[handle.name] = DomainStatus.RUNNING

    def stop_domain(self, handle: DomainHandle, graceful: bool = True) -> None:
        self._enter("stop_domain", handle.name)
        self._require("stop_domain", handle.name)
        self.domains[handle.name] = DomainStatus.SHUT_OFF

    def destroy_domain(self, handle: DomainHandle) -> None:
        self._enter("destroy_domain", handle.name)
        self._require("destroy_domain", handle.name)
        del self.domains[handle.name]

    def get_status(self, handle: DomainHandle) -> DomainStatus:
        self._enter("get_status", handle.name)
        self._require("get_status", handle.name)
        return self.domains[handle.name]

    def list_domains(self) -> list[str]:
        self._enter("list_domains", None)
        return list(self.domains)


class FakeImageProvisioner(ImageProvisioner):
    """Writes empty files instead of running qemu-img."""

    def __init__(self, storage_dir: Path) -> None:
        super().__init__(storage_dir=storage_dir)
        self.prepared: list[str] = []
        self.deleted: list[str] = []
        self.failures: list[Exception] = []
        self.delete_failures: list[Exception] = []
        self.entered = threading.Event()
        self.gate: threading.Event | None = None

    def prepare_image(self, request, expected=None) -> DiskImage:
        self.prepared.append(request.name)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.failures:
            raise self.failures.pop(0)
        image = self.image_for(request.name, request.disk_size_gib)
        Path(image.path).touch()
        return image

    def delete_image(self, image: DiskImage) -> None:
        self.deleted.append(image.path)
        if self.delete_failures:
            raise self.delete_failures.pop(0)
        Path(image.path).unlink(missing_ok=True)


@pytest.fixture
def make_request():
    def _make(name: str = "vm1", **overrides) -> ProvisionRequest:
        data = dict(
            name=name,
            memory_mib=2048,
            vcpu_count=2,
            disk_size_gib=20,
            network_mode=NetworkMode.BRIDGED,
        )
        data.update(overrides)
        return ProvisionRequest(**data)

    return _make


@pytest.fixture
def store(tmp_path):
    inventory = InventoryStore(str(tmp_path / "inventory.db"))
    yield inventory
    inventory.close()


@pytest.fixture
def control() -> FakeControlClient:
    return FakeControlClient()


@pytest.fixture
def provisioner(tmp_path) -> FakeImageProvisioner:
    return FakeImageProvisioner(tmp_path / "instances")


@pytest.fixture
def make_orchestrator(store, control, provisioner):
    created: list[ProvisioningOrchestrator] = []

    def _make(**kwargs) -> ProvisioningOrchestrator:
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("backoff_max", 0)
        kwargs.setdefault("call_timeout", None)
        kwargs.setdefault("workers", 4)
        orchestrator = ProvisioningOrchestrator(
            store,
            control,
            provisioner,
            validator=RequestValidator(),
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture
def orchestrator(make_orchestrator) -> ProvisioningOrchestrator:
    return make_orchestrator()
