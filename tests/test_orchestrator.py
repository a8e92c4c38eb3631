"""Tests for core.orchestrator (provisioning state machine)."""

from __future__ import annotations

import json
import subprocess
import threading
import time
from pathlib import Path

import pytest

from core.errors import (
    ControlPlaneError,
    ControlPlaneErrorKind,
    ImageError,
    ImageErrorKind,
    InvalidTransitionError,
    OrchestrationBusyError,
    RecordNotFoundError,
    ValidationError,
)
from core.image_provisioner import GIB, ImageProvisioner
from core.orchestrator import ProvisioningOrchestrator
from core.validator import RequestValidator
from schemas.vm_schema import DomainStatus, VmState


def transient(message: str = "resource temporarily unavailable") -> ControlPlaneError:
    return ControlPlaneError(ControlPlaneErrorKind.TRANSIENT, message)


def permanent(message: str = "invalid domain definition") -> ControlPlaneError:
    return ControlPlaneError(ControlPlaneErrorKind.PERMANENT, message)


def _provision(orchestrator, request):
    orchestrator.submit(request)
    return orchestrator.wait(request.name, timeout=10)


def _stopped_vm(orchestrator, make_request):
    _provision(orchestrator, make_request("vm1"))
    orchestrator.stop("vm1")
    return orchestrator.wait("vm1", timeout=10)


def _wait_for_state(store, name, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        record = store.get(name)
        if record is not None and record.state == state:
            return record
        time.sleep(0.01)
    raise AssertionError(f"{name} never reached {state.value}")



class TestSubmit:
    def test_always_succeeding_control_plane_reaches_running(
        self, orchestrator, control, provisioner, make_request
    ):
        accepted = orchestrator.submit(make_request("vm1"))
        assert accepted.name == "vm1"
        assert accepted.attempt == 1

        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.RUNNING
        assert record.attempt == 1
        assert record.last_error is None
        assert record.in_progress is False
        assert control.count("create_domain") == 1
        assert control.count("start_domain") == 1
        assert control.domains["vm1"] == DomainStatus.RUNNING
        assert Path(record.disk_image.path).exists()
        assert record.domain.uuid == "uuid-vm1"

    @pytest.mark.parametrize(
        "field,overrides",
        [
            ("memoryMiB", {"memory_mib": 0}),
            ("vcpuCount", {"vcpu_count": 0}),
            ("diskSizeGiB", {"disk_size_gib": 0}),
        ],
    )
    def test_out_of_bounds_request_is_rejected_without_control_plane(
        self, orchestrator, control, store, make_request, field, overrides
    ):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.submit(make_request("vm1", **overrides))

        assert exc_info.value.field == field
        record = store.get("vm1")
        assert record.state == VmState.FAILED
        assert record.in_progress is False
        assert field in record.last_error
        assert control.calls == []

    def test_name_already_defined_on_control_plane_is_rejected(
        self, orchestrator, control, store, make_request
    ):
        control.domains["vm1"] = DomainStatus.RUNNING

        orchestrator.submit(make_request("vm1"))
        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.FAILED
        assert "name" in record.last_error
        assert control.count("list_domains") == 1
        assert control.count("create_domain") == 0
        assert control.count("start_domain") == 0

    def test_deleting_rejected_record_leaves_clashing_domain_alone(
        self, orchestrator, control, store, make_request
    ):
        control.domains["vm1"] = DomainStatus.RUNNING
        _provision(orchestrator, make_request("vm1"))

        orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert store.get("vm1") is None
        assert control.domains["vm1"] == DomainStatus.RUNNING
        assert control.count("destroy_domain") == 0

    def test_submit_does_not_wait_for_control_plane(self, make_orchestrator, control, make_request):
        orchestrator = make_orchestrator(backoff_base=0.5, backoff_max=0.5)
        control.fail("list_domains", transient(), transient())

        started = time.monotonic()
        accepted = orchestrator.submit(make_request("vm1"))
        elapsed = time.monotonic() - started

        assert accepted.state in (VmState.PENDING, VmState.IMAGE_PREPARING)
        assert elapsed < 0.5
        record = orchestrator.wait("vm1", timeout=10)
        assert record.state == VmState.RUNNING
        assert control.count("list_domains") == 3

    def test_resubmitting_running_vm_returns_existing_record(
        self, orchestrator, control, make_request
    ):
        _provision(orchestrator, make_request("vm1"))

        again = orchestrator.submit(make_request("vm1", memory_mib=4096))

        assert again.state == VmState.RUNNING
        assert again.request.memory_mib == 2048
        assert control.count("create_domain") == 1

    def test_concurrent_duplicate_submissions_provision_once(
        self, orchestrator, control, store, provisioner, make_request
    ):
        provisioner.gate = threading.Event()
        barrier = threading.Barrier(2)
        results = []

        def submit():
            barrier.wait()
            results.append(orchestrator.submit(make_request("vm1")))

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        provisioner.gate.set()
        record = orchestrator.wait("vm1", timeout=10)

        assert len(results) == 2
        assert record.state == VmState.RUNNING
        assert len(store.list()) == 1
        assert provisioner.prepared == ["vm1"]
        assert control.count("create_domain") == 1
        assert control.count("start_domain") == 1

    def test_distinct_names_provision_in_parallel(self, orchestrator, control, make_request):
        names = [f"vm{i}" for i in range(6)]
        for name in names:
            orchestrator.submit(make_request(name))

        states = {name: orchestrator.wait(name, timeout=10).state for name in names}

        assert set(states.values()) == {VmState.RUNNING}
        assert control.count("create_domain") == len(names)

    def test_failed_name_can_be_resubmitted(self, orchestrator, control, make_request):
        control.fail("create_domain", permanent())
        first = _provision(orchestrator, make_request("vm1"))
        assert first.state == VmState.FAILED
        assert first.attempt == 1

        second = _provision(orchestrator, make_request("vm1"))

        assert second.state == VmState.RUNNING
        assert second.attempt == 2
        assert second.last_error is None


class TestRetry:
    def test_two_transient_failures_then_success(self, make_orchestrator, control, make_request):
        orchestrator = make_orchestrator(max_retries=3)
        control.fail("create_domain", transient(), transient())

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.RUNNING
        assert record.attempt == 3
        assert control.count("create_domain") == 3
        assert control.count("start_domain") == 1

    def test_exhausted_retries_fail_and_roll_back_image(
        self, make_orchestrator, control, provisioner, make_request
    ):
        orchestrator = make_orchestrator(max_retries=2)
        control.fail("create_domain", transient(), transient(), transient())

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert control.count("create_domain") == 3
        assert "temporarily unavailable" in record.last_error
        assert record.rollback_incomplete is False
        assert not provisioner.image_path("vm1").exists()

    def test_permanent_error_is_not_retried(self, orchestrator, control, make_request):
        control.fail("create_domain", permanent())

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert record.attempt == 1
        assert control.count("create_domain") == 1

    def test_transient_image_failure_is_retried(self, orchestrator, provisioner, make_request):
        provisioner.failures.append(ImageError(ImageErrorKind.IO_FAILURE, "disk busy"))

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.RUNNING
        assert record.attempt == 2
        assert provisioner.prepared == ["vm1", "vm1"]

    def test_call_timeout_counts_as_transient(self, make_orchestrator, control, make_request):
        orchestrator = make_orchestrator(call_timeout=0.05, max_retries=0)
        control.delays["start_domain"] = 0.5

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert "timed out" in record.last_error


class TestRollback:
    def test_permanent_start_failure_destroys_domain_and_deletes_image(
        self, orchestrator, control, provisioner, make_request
    ):
        control.fail("start_domain", permanent("unsupported configuration"))

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert "unsupported configuration" in record.last_error
        ops = control.operations()
        assert ops.index("destroy_domain") > ops.index("start_domain")
        assert "vm1" not in control.domains
        assert not provisioner.image_path("vm1").exists()
        assert record.domain is None
        assert record.disk_image is None

    def test_create_failure_deletes_partial_image(
        self, orchestrator, control, provisioner, make_request
    ):
        control.fail("create_domain", permanent())

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert record.rollback_incomplete is False
        assert provisioner.deleted == [str(provisioner.image_path("vm1"))]
        assert control.count("start_domain") == 0

    def test_image_conflict_fails_before_create(self, orchestrator, control, provisioner, make_request):
        provisioner.failures.append(ImageError(ImageErrorKind.CONFLICT, "size mismatch"))

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert "size mismatch" in record.last_error
        assert provisioner.prepared == ["vm1"]
        assert control.count("create_domain") == 0

    def test_failed_rollback_is_flagged_and_blocks_resubmission(
        self, orchestrator, control, make_request
    ):
        control.fail("start_domain", permanent())
        control.fail("destroy_domain", permanent("libvirtd refused"))

        record = _provision(orchestrator, make_request("vm1"))

        assert record.state == VmState.FAILED
        assert record.rollback_incomplete is True
        assert "rollback incomplete" in record.last_error
        assert record.domain is not None
        with pytest.raises(InvalidTransitionError):
            orchestrator.submit(make_request("vm1"))

    def test_incomplete_rollback_is_cleared_by_delete(self, orchestrator, control, store, make_request):
        control.fail("start_domain", permanent())
        control.fail("destroy_domain", permanent())
        _provision(orchestrator, make_request("vm1"))

        orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert store.get("vm1") is None
        assert "vm1" not in control.domains


class TestLifecycle:
    def test_delete_running_vm_tears_everything_down(
        self, orchestrator, control, provisioner, store, make_request
    ):
        _provision(orchestrator, make_request("vm1"))

        orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert store.get("vm1") is None
        assert control.count("destroy_domain") == 1
        assert "vm1" not in control.domains
        assert not provisioner.image_path("vm1").exists()
        with pytest.raises(RecordNotFoundError):
            orchestrator.get("vm1")

    def test_delete_failed_record(self, orchestrator, store, make_request):
        with pytest.raises(ValidationError):
            orchestrator.submit(make_request("vm1", vcpu_count=0))

        orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert store.get("vm1") is None

    def test_stop_then_start(self, orchestrator, control, make_request):
        _provision(orchestrator, make_request("vm1"))

        orchestrator.stop("vm1")
        stopped = orchestrator.wait("vm1", timeout=10)
        assert stopped.state == VmState.STOPPED
        assert control.domains["vm1"] == DomainStatus.SHUT_OFF

        starting = orchestrator.start("vm1")
        assert starting.state == VmState.STARTING
        running = orchestrator.wait("vm1", timeout=10)

        assert running.state == VmState.RUNNING
        assert control.domains["vm1"] == DomainStatus.RUNNING
        assert control.count("start_domain") == 2

    def test_stop_requires_running(self, orchestrator, make_request):
        _provision(orchestrator, make_request("vm1"))
        orchestrator.stop("vm1")
        orchestrator.wait("vm1", timeout=10)

        with pytest.raises(InvalidTransitionError):
            orchestrator.stop("vm1")

    def test_start_requires_stopped(self, orchestrator, make_request):
        _provision(orchestrator, make_request("vm1"))

        with pytest.raises(InvalidTransitionError):
            orchestrator.start("vm1")

    def test_unknown_name(self, orchestrator):
        with pytest.raises(RecordNotFoundError):
            orchestrator.stop("ghost")
        with pytest.raises(RecordNotFoundError):
            orchestrator.delete("ghost")

    def test_stop_of_vanished_domain_counts_as_stopped(self, orchestrator, control, make_request):
        _provision(orchestrator, make_request("vm1"))
        del control.domains["vm1"]

        orchestrator.stop("vm1")
        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.STOPPED

    def test_failed_stop_keeps_vm_running(self, orchestrator, control, make_request):
        _provision(orchestrator, make_request("vm1"))
        control.fail("stop_domain", permanent("guest refused"))

        orchestrator.stop("vm1")
        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.RUNNING
        assert "guest refused" in record.last_error

    def test_failed_restart_keeps_resources(self, orchestrator, control, provisioner, make_request):
        _provision(orchestrator, make_request("vm1"))
        orchestrator.stop("vm1")
        orchestrator.wait("vm1", timeout=10)
        control.fail("start_domain", permanent())

        orchestrator.start("vm1")
        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.FAILED
        assert "vm1" in control.domains
        assert provisioner.image_path("vm1").exists()
        assert record.domain is not None

    def test_operation_while_busy_is_rejected(self, orchestrator, provisioner, store, make_request):
        _provision(orchestrator, make_request("vm1"))
        assert store.acquire("vm1")

        with pytest.raises(OrchestrationBusyError):
            orchestrator.stop("vm1")
        with pytest.raises(OrchestrationBusyError):
            orchestrator.delete("vm1")


class TestCancellation:
    def test_cancel_during_image_preparation_rolls_back(
        self, orchestrator, control, provisioner, make_request
    ):
        provisioner.gate = threading.Event()
        orchestrator.submit(make_request("vm1"))
        assert provisioner.entered.wait(timeout=5)

        marked = orchestrator.cancel("vm1")
        provisioner.gate.set()
        record = orchestrator.wait("vm1", timeout=10)

        assert marked.cancel_requested is True
        assert record.state == VmState.FAILED
        assert record.last_error == "cancelled"
        assert record.cancel_requested is False
        assert control.count("create_domain") == 0
        assert not provisioner.image_path("vm1").exists()

    def test_cancel_without_provisioning_is_rejected(self, orchestrator, make_request):
        _provision(orchestrator, make_request("vm1"))

        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel("vm1")

    def test_delete_during_provisioning_removes_record(
        self, orchestrator, control, provisioner, store, make_request
    ):
        provisioner.gate = threading.Event()
        orchestrator.submit(make_request("vm1"))
        assert provisioner.entered.wait(timeout=5)

        marked = orchestrator.delete("vm1")
        provisioner.gate.set()
        orchestrator.wait("vm1", timeout=10)

        assert marked.delete_requested is True
        assert store.get("vm1") is None
        assert control.count("create_domain") == 0
        assert not provisioner.image_path("vm1").exists()

    @pytest.mark.parametrize(
        "boundary,slow_call",
        [(VmState.CREATING, "create_domain"), (VmState.STARTING, "start_domain")],
    )
    def test_cancel_after_domain_creation_destroys_domain(
        self, orchestrator, control, provisioner, store, make_request, boundary, slow_call
    ):
        control.delays[slow_call] = 0.5
        orchestrator.submit(make_request("vm1"))
        _wait_for_state(store, "vm1", boundary)

        orchestrator.cancel("vm1")
        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.FAILED
        assert record.last_error == "cancelled"
        assert record.rollback_incomplete is False
        assert control.count("destroy_domain") == 1
        assert "vm1" not in control.domains
        assert not provisioner.image_path("vm1").exists()

    @pytest.mark.parametrize(
        "boundary,slow_call",
        [(VmState.CREATING, "create_domain"), (VmState.STARTING, "start_domain")],
    )
    def test_delete_after_domain_creation_removes_everything(
        self, orchestrator, control, provisioner, store, make_request, boundary, slow_call
    ):
        control.delays[slow_call] = 0.5
        orchestrator.submit(make_request("vm1"))
        _wait_for_state(store, "vm1", boundary)

        orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert store.get("vm1") is None
        assert "vm1" not in control.domains
        assert not provisioner.image_path("vm1").exists()

    def test_delete_during_restart_tears_down(self, orchestrator, control, provisioner, store, make_request):
        _stopped_vm(orchestrator, make_request)
        control.delays["start_domain"] = 0.5

        orchestrator.start("vm1")
        marked = orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert marked.state == VmState.STARTING
        assert marked.delete_requested is True
        assert store.get("vm1") is None
        assert "vm1" not in control.domains
        assert not provisioner.image_path("vm1").exists()

    def test_cancel_during_restart_powers_domain_off(
        self, orchestrator, control, provisioner, make_request
    ):
        _stopped_vm(orchestrator, make_request)
        control.delays["start_domain"] = 0.5

        orchestrator.start("vm1")
        orchestrator.cancel("vm1")
        record = orchestrator.wait("vm1", timeout=10)

        assert record.state == VmState.FAILED
        assert record.last_error == "cancelled"
        assert record.rollback_incomplete is False
        assert record.domain is not None
        assert control.domains["vm1"] == DomainStatus.SHUT_OFF
        assert provisioner.image_path("vm1").exists()

    def test_delete_during_failing_restart_still_runs(
        self, orchestrator, control, store, make_request
    ):
        _stopped_vm(orchestrator, make_request)
        control.delays["start_domain"] = 0.5
        control.fail("start_domain", permanent())

        orchestrator.start("vm1")
        orchestrator.delete("vm1")
        orchestrator.wait("vm1", timeout=10)

        assert store.get("vm1") is None
        assert "vm1" not in control.domains



class TestRecover:
    def test_interrupted_records_become_failed(self, orchestrator, store, make_request):
        store.reserve("vm1", make_request("vm1"))
        store.reserve("vm2", make_request("vm2"))

        def creating(record):
            record.state = VmState.CREATING

        store.update("vm2", creating)

        recovered = orchestrator.recover()

        assert sorted(recovered) == ["vm1", "vm2"]
        pending = store.get("vm1")
        assert pending.state == VmState.FAILED
        assert pending.rollback_incomplete is False
        assert pending.in_progress is False
        creating_record = store.get("vm2")
        assert creating_record.state == VmState.FAILED
        assert creating_record.rollback_incomplete is True
        assert "restart" in creating_record.last_error

    def test_idle_records_are_left_alone(self, orchestrator, store, make_request):
        _provision(orchestrator, make_request("vm1"))

        assert orchestrator.recover() == []
        assert store.get("vm1").state == VmState.RUNNING


class TestImageReuse:
    """Resubmission after a failed restart reuses the disk only if its source is unchanged."""

    @pytest.fixture
    def source(self, tmp_path) -> Path:
        path = tmp_path / "base.img"
        path.write_bytes(b"golden image")
        return path

    @pytest.fixture
    def qemu_creates(self, monkeypatch, source) -> list:
        creates = []

        def run(cmd, **kwargs):
            if cmd[1] == "create":
                creates.append(cmd)
                Path(cmd[-2]).write_bytes(b"QFI\xfb")
                return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
            if cmd[-1] == str(source.resolve()):
                info = {"format": "raw"}
            else:
                info = {
                    "format": "qcow2",
                    "virtual-size": 20 * GIB,
                    "full-backing-filename": str(source.resolve()),
                }
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(info), stderr="")

        monkeypatch.setattr("core.image_provisioner.subprocess.run", run)
        return creates

    @pytest.fixture
    def failed_restart(self, store, control, tmp_path, source, qemu_creates, make_request):
        orchestrator = ProvisioningOrchestrator(
            store,
            control,
            ImageProvisioner(storage_dir=tmp_path / "images"),
            validator=RequestValidator(),
            backoff_base=0,
            backoff_max=0,
            call_timeout=None,
        )
        request = make_request("vm1", image_source_path=str(source))
        assert _provision(orchestrator, request).state == VmState.RUNNING
        orchestrator.stop("vm1")
        orchestrator.wait("vm1", timeout=10)
        control.fail("start_domain", permanent())
        orchestrator.start("vm1")
        failed = orchestrator.wait("vm1", timeout=10)
        assert failed.state == VmState.FAILED
        assert failed.disk_image.checksum is not None
        yield orchestrator, request
        orchestrator.shutdown()

    def test_unchanged_source_reuses_disk_and_domain(self, failed_restart, control, qemu_creates):
        orchestrator, request = failed_restart

        record = _provision(orchestrator, request)

        assert record.state == VmState.RUNNING
        assert record.attempt == 2
        assert len(qemu_creates) == 1
        assert control.count("create_domain") == 2

    def test_changed_source_is_a_conflict(self, failed_restart, control, source, qemu_creates):
        orchestrator, request = failed_restart
        source.write_bytes(b"golden image, patched")

        record = _provision(orchestrator, request)

        assert record.state == VmState.FAILED
        assert "changed" in record.last_error
        assert record.disk_image is not None
        assert record.domain is not None
        assert Path(record.disk_image.path).exists()
        assert len(qemu_creates) == 1
        assert control.count("create_domain") == 1
