"""
Provisioning state machine.

Drives a ProvisionRequest through

    Pending -> ImagePreparing -> Creating -> Starting -> Running

on a worker pool, plus the stop/start/delete lifecycle of existing records.
Every transition is written to the InventoryStore before the next step
runs, and that write is also where cancel/delete requests are observed.
At most one operation per name is in flight, guarded by the record's
`in_progress` marker.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Iterable, Optional

from config.settings import (
    CONTROL_PLANE_TIMEOUT,
    PROVISION_BACKOFF_BASE,
    PROVISION_BACKOFF_MAX,
    PROVISION_MAX_RETRIES,
    PROVISION_WORKERS,
)
from core.errors import (
    ControlPlaneError,
    ControlPlaneErrorKind,
    ImageError,
    InvalidTransitionError,
    OrchestrationBusyError,
    RecordNotFoundError,
    ValidationError,
)
from core.image_provisioner import ImageProvisioner
from core.inventory import InventoryStore
from core.logger import log_event
from core.metrics import (
    observe_control_call,
    record_outcome,
    record_retry,
    record_rollback_incomplete,
    record_submission,
)
from core.validator import RequestValidator
from core.virt_client import VirtControlClient
from schemas.vm_schema import (
    PROVISIONING_STATES,
    DiskImage,
    DomainHandle,
    DomainSpec,
    DomainStatus,
    ProvisionRequest,
    VmRecord,
    VmState,
    can_transition,
)


class _Interrupted(Exception):
    """Raised at a transition boundary when cancel or delete was requested."""

    def __init__(self, delete: bool) -> None:
        super().__init__("delete requested" if delete else "cancelled")
        self.delete = delete


class ProvisioningOrchestrator:
    def __init__(
        self,
        store: InventoryStore,
        control: VirtControlClient,
        provisioner: ImageProvisioner,
        validator: Optional[RequestValidator] = None,
        max_retries: int = PROVISION_MAX_RETRIES,
        backoff_base: float = PROVISION_BACKOFF_BASE,
        backoff_max: float = PROVISION_BACKOFF_MAX,
        call_timeout: Optional[float] = CONTROL_PLANE_TIMEOUT,
        workers: int = PROVISION_WORKERS,
    ) -> None:
        self.store = store
        self.control = control
        self.provisioner = provisioner
        self.validator = validator or RequestValidator()
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.call_timeout = call_timeout

        self._workers = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provision")
        # control-plane calls run here so a hung hypervisor call can time out
        self._calls: Optional[ThreadPoolExecutor] = None
        if call_timeout:
            self._calls = ThreadPoolExecutor(
                max_workers=workers * 2,
                thread_name_prefix="control-plane",
            )
        self._tasks: dict[str, Future] = {}
        self._tasks_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, name: str) -> VmRecord:
        record = self.store.get(name)
        if record is None:
            raise RecordNotFoundError(name)
        return record

    def list(self) -> list[VmRecord]:
        return self.store.list()

    def domain_status(self, name: str) -> DomainStatus:
        record = self.get(name)
        handle = record.domain or DomainHandle(name=name)
        return self._call("get_status", self.control.get_status, handle)

    def wait(self, name: str, timeout: Optional[float] = None) -> Optional[VmRecord]:
        """Block until no operation for `name` is in flight; return the record."""
        seen: Optional[Future] = None
        while True:
            with self._tasks_lock:
                future = self._tasks.get(name)
            if future is None or future is seen:
                break
            future.result(timeout=timeout)
            seen = future
        return self.store.get(name)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, request: ProvisionRequest) -> VmRecord:
        """
        Accept a provisioning request.

        Returns the record in Pending once the name is reserved and the
        request passes the checks that need no control plane; the name clash
        check and everything after it run on a worker. Resubmitting a name
        whose record is live (or still busy) returns that record untouched.
        Validation errors are recorded as Failed and raised.
        """
        name = request.name
        while not self.store.reserve(name, request):
            existing = self.store.get(name)
            if existing is None:
                continue  # removed between reserve and get
            if (
                existing.state == VmState.FAILED
                and existing.rollback_incomplete
                and not existing.in_progress
            ):
                raise InvalidTransitionError(
                    f"VM '{name}' failed with an incomplete rollback; delete it before resubmitting"
                )
            log_event(f"[orchestrator] Duplicate submission for '{name}' in state {existing.state.value}")
            record_submission(new_attempt=False)
            return existing

        record_submission(new_attempt=True)
        log_event(
            f"[orchestrator] Accepted '{name}' (memory={request.memory_mib}MiB, "
            f"vcpus={request.vcpu_count}, disk={request.disk_size_gib}GiB, "
            f"network={request.network_mode.value})"
        )

        try:
            # name clashes need the control plane; the worker checks those
            self.validator.validate(request, frozenset())
        except ValidationError as e:
            log_event(f"[orchestrator] Rejected '{name}': {e}", logging.WARNING)
            self._fail(name, f"validation failed: {e}", released=False)
            self._release(name)
            record_outcome("provision", "rejected")
            raise

        self._schedule(name, "provision", self._provision)
        return self.get(name)

    # ------------------------------------------------------------------
    # Lifecycle requests
    # ------------------------------------------------------------------
    def stop(self, name: str, graceful: bool = True) -> VmRecord:
        self._acquire_in_state(name, {VmState.RUNNING}, "stop")
        self._schedule(name, "stop", self._stop, graceful)
        return self.get(name)

    def start(self, name: str) -> VmRecord:
        self._acquire_in_state(name, {VmState.STOPPED}, "start")
        try:
            record = self._transition(name, VmState.STARTING)
        except Exception:
            self._release(name)
            raise
        self._schedule(name, "start", self._start)
        return record

    def cancel(self, name: str) -> VmRecord:
        def mark(record: VmRecord) -> None:
            if not record.in_progress or record.state not in PROVISIONING_STATES:
                raise InvalidTransitionError(f"VM '{name}' has no provisioning in progress")
            record.cancel_requested = True

        record = self.store.update(name, mark)
        log_event(f"[orchestrator] Cancel requested for '{name}' in state {record.state.value}")
        return record

    def delete(self, name: str) -> VmRecord:
        """
        Tear down a VM and remove its record.

        If provisioning is in flight the worker is asked to stop at its next
        transition and tear down what it built; otherwise teardown is
        scheduled right away.
        """

        def mark(record: VmRecord) -> None:
            if record.in_progress:
                if record.state not in PROVISIONING_STATES:
                    raise OrchestrationBusyError(name)
                record.delete_requested = True
                record.cancel_requested = True

        record = self.store.update(name, mark)
        if record.in_progress:
            log_event(f"[orchestrator] Delete requested for in-flight '{name}' ({record.state.value})")
            return record

        if not self.store.acquire(name):
            raise OrchestrationBusyError(name)
        self._schedule(name, "delete", self._delete)
        return self.get(name)

    def _acquire_in_state(self, name: str, allowed: set, operation: str) -> None:
        record = self.get(name)
        if record.state not in allowed:
            raise InvalidTransitionError(
                f"Cannot {operation} VM '{name}' in state {record.state.value}"
            )
        if not self.store.acquire(name):
            raise OrchestrationBusyError(name)
        record = self.get(name)
        if record.state not in allowed:
            self._release(name)
            raise InvalidTransitionError(
                f"Cannot {operation} VM '{name}' in state {record.state.value}"
            )

    # ------------------------------------------------------------------
    # Recovery / shutdown
    # ------------------------------------------------------------------
    def recover(self) -> list[str]:
        """
        Clean up after a previous process died mid-operation.

        Provisioning that was interrupted becomes Failed; anything past
        Pending may have left a disk or domain behind, so it is flagged
        rollback-incomplete. Idle lifecycle states are simply released.
        """
        recovered = []
        for record in self.store.list_in_progress():
            name = record.name
            if record.state in PROVISIONING_STATES:
                self._fail(
                    name,
                    f"interrupted by service restart during {record.state.value}",
                    problems=["resources may remain"] if record.state != VmState.PENDING else None,
                    released=record.state == VmState.PENDING,
                )
            self._release(name)
            recovered.append(name)
            log_event(f"[orchestrator] Recovered interrupted record '{name}' ({record.state.value})")
        return recovered

    def shutdown(self, wait: bool = True) -> None:
        self._workers.shutdown(wait=wait)
        if self._calls is not None:
            self._calls.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    def _schedule(self, name: str, operation: str, fn: Callable[..., None], *args: Any) -> None:
        future = self._workers.submit(self._guarded, name, operation, fn, *args)
        with self._tasks_lock:
            self._tasks[name] = future

    def _guarded(self, name: str, operation: str, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(name, *args)
        except Exception as e:  # noqa: BLE001
            log_event(
                f"[orchestrator] Unexpected error during {operation} of '{name}': {e}",
                logging.ERROR,
            )
            record_outcome(operation, "error")
            try:
                self._fail(name, f"internal error during {operation}: {e}", released=False)
            except RecordNotFoundError:
                pass
        finally:
            self._release(name)

    def _provision(self, name: str) -> None:
        record = self.get(name)
        request = record.request
        image: Optional[DiskImage] = None
        handle: Optional[DomainHandle] = None
        domain_attempted = False

        try:
            self._check_name_clash(name, record)
            self._transition(name, VmState.IMAGE_PREPARING)
            image = self._with_retry(
                name,
                "prepare_image",
                lambda: self.provisioner.prepare_image(request, record.disk_image),
            )
            self._patch(name, disk_image=image)

            self._transition(name, VmState.CREATING)
            spec = DomainSpec.from_request(request, image)
            domain_attempted = True
            handle = self._with_retry(
                name,
                "create_domain",
                lambda: self._call("create_domain", self.control.create_domain, spec),
            )
            self._patch(name, domain=handle)

            self._transition(name, VmState.STARTING)
            self._with_retry(name, "start_domain", lambda: self._start_and_confirm(handle))

            self._transition(name, VmState.RUNNING, clear_error=True)
            record_outcome("provision", "running")
            log_event(f"[orchestrator] '{name}' is running")

        except ValidationError as e:
            log_event(f"[orchestrator] Rejected '{name}': {e}", logging.WARNING)
            self._fail(name, f"validation failed: {e}", released=False)
            record_outcome("provision", "rejected")

        except _Interrupted as stop:
            if stop.delete:
                self._delete(name)
                return
            if handle is None and domain_attempted:
                handle = DomainHandle(name=name)
            problems = self._rollback(handle, image)
            self._fail(name, "cancelled", problems, released=image is not None)
            record_outcome("provision", "cancelled")

        except (ImageError, ControlPlaneError) as e:
            log_event(f"[orchestrator] Provisioning '{name}' failed: {e}", logging.ERROR)
            if handle is None and domain_attempted:
                handle = DomainHandle(name=name)
            problems = self._rollback(handle, image)
            # without a prepared image the record's earlier references stay valid
            self._fail(name, str(e), problems, released=image is not None)
            record_outcome("provision", "failed")

    def _check_name_clash(self, name: str, record: VmRecord) -> None:
        """Reject names already defined on the control plane, other than our own domain."""
        names = self._with_retry(
            name,
            "list_domains",
            lambda: self._call("list_domains", self.control.list_domains),
            count_attempt=False,
        )
        existing = set(names)
        if record.domain is not None:
            existing.discard(record.domain.name)
        self.validator.validate(record.request, existing)

    def _start_and_confirm(self, handle: DomainHandle) -> None:
        self._call("start_domain", self.control.start_domain, handle)
        status = self._call("get_status", self.control.get_status, handle)
        if status != DomainStatus.RUNNING:
            raise ControlPlaneError(
                ControlPlaneErrorKind.TRANSIENT,
                f"domain '{handle.name}' reports {status.value} after start",
                operation="start_domain",
            )

    def _stop(self, name: str, graceful: bool) -> None:
        record = self.get(name)
        handle = record.domain or DomainHandle(name=name)
        try:
            self._with_retry(
                name,
                "stop_domain",
                lambda: self._call("stop_domain", self.control.stop_domain, handle, graceful),
                count_attempt=False,
            )
        except ControlPlaneError as e:
            if not e.not_found:
                log_event(f"[orchestrator] Stopping '{name}' failed: {e}", logging.ERROR)
                self._patch(name, last_error=f"stop failed: {e}")
                record_outcome("stop", "failed")
                return
            log_event(f"[orchestrator] Domain of '{name}' is gone; treating as stopped", logging.WARNING)
        self._transition(name, VmState.STOPPED, clear_error=True)
        record_outcome("stop", "stopped")

    def _start(self, name: str) -> None:
        record = self.get(name)
        handle = record.domain or DomainHandle(name=name)
        try:
            self._with_retry(
                name,
                "start_domain",
                lambda: self._start_and_confirm(handle),
                count_attempt=False,
            )
            self._transition(name, VmState.RUNNING, clear_error=True)
        except _Interrupted as stop:
            self._abort_start(name, handle, stop)
            return
        except ControlPlaneError as e:
            log_event(f"[orchestrator] Starting '{name}' failed: {e}", logging.ERROR)
            self._fail(name, f"start failed: {e}", released=False)
            record_outcome("start", "failed")
            return
        record_outcome("start", "running")

    def _abort_start(self, name: str, handle: DomainHandle, stop: _Interrupted) -> None:
        """
        A restart was cancelled or the VM deleted while it was Starting.

        Delete tears the VM down. Cancel powers the domain off again and
        leaves the record Failed with its disk and domain, like a failed start.
        """
        if stop.delete:
            self._delete(name)
            return
        problems = []
        try:
            self._call("stop_domain", self.control.stop_domain, handle, False)
        except ControlPlaneError as e:
            if not e.not_found:
                problems.append(str(e))
        self._fail(name, "cancelled", problems, released=False)
        record_outcome("start", "cancelled")

    def _delete(self, name: str) -> None:
        record = self._patch(name, delete_requested=False, cancel_requested=False)
        handle, image = record.domain, record.disk_image
        if record.rollback_incomplete:
            # an interrupted attempt may have built resources it never recorded
            handle = handle or DomainHandle(name=name)
            image = image or self.provisioner.image_for(name, record.request.disk_size_gib)
        problems = self._rollback(handle, image)
        if problems:
            self._fail(name, "delete failed", problems)
            record_outcome("delete", "incomplete")
            return
        self._finish_delete(name)

    def _finish_delete(self, name: str) -> None:
        def mark(record: VmRecord) -> None:
            record.state = VmState.DELETED
            record.domain = None
            record.disk_image = None

        self.store.update(name, mark)
        self.store.remove(name)
        record_outcome("delete", "deleted")
        log_event(f"[orchestrator] '{name}' deleted")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one control-plane call, bounded by call_timeout."""
        started = time.monotonic()
        try:
            if self._calls is None:
                return fn(*args)
            future = self._calls.submit(fn, *args)
            try:
                return future.result(timeout=self.call_timeout)
            except FutureTimeoutError:
                future.cancel()
                raise ControlPlaneError(
                    ControlPlaneErrorKind.TRANSIENT,
                    f"{operation} timed out after {self.call_timeout}s",
                    operation=operation,
                ) from None
        finally:
            observe_control_call(operation, time.monotonic() - started)

    def _with_retry(
        self,
        name: str,
        step: str,
        fn: Callable[[], Any],
        count_attempt: bool = True,
    ) -> Any:
        delay = self.backoff_base
        retries = 0
        while True:
            try:
                return fn()
            except (ControlPlaneError, ImageError) as e:
                if not e.retryable or retries >= self.max_retries:
                    raise
                retries += 1
                record_retry(step)
                log_event(
                    f"[orchestrator] {step} for '{name}' failed ({e}); "
                    f"retry {retries}/{self.max_retries} in {min(delay, self.backoff_max):.2f}s",
                    logging.WARNING,
                )
                if count_attempt:
                    self._bump_attempt(name, f"{step}: {e}")
                time.sleep(min(delay, self.backoff_max))
                delay *= 2

    def _transition(self, name: str, target: VmState, clear_error: bool = False) -> VmRecord:
        """
        Move `name` to `target`, or raise _Interrupted if a cancel/delete
        request is pending. Both checks happen inside the same atomic update.
        """

        def mutate(record: VmRecord) -> None:
            if record.in_progress and (record.delete_requested or record.cancel_requested):
                raise _Interrupted(delete=record.delete_requested)
            if not can_transition(record.state, target):
                raise InvalidTransitionError(
                    f"VM '{name}' cannot go from {record.state.value} to {target.value}"
                )
            record.state = target
            if clear_error:
                record.last_error = None

        record = self.store.update(name, mutate)
        log_event(f"[orchestrator] '{name}' -> {target.value}")
        return record

    def _fail(
        self,
        name: str,
        message: str,
        problems: Optional[Iterable[str]] = None,
        released: bool = True,
    ) -> VmRecord:
        """
        Record a failed attempt.

        `problems` lists rollback steps that did not complete; when present
        the record is flagged for manual cleanup. `released` says whether the
        disk and domain are known to be gone.
        """
        problems = list(problems or [])

        def mutate(record: VmRecord) -> None:
            if record.state != VmState.FAILED and not can_transition(record.state, VmState.FAILED):
                raise InvalidTransitionError(
                    f"VM '{name}' cannot go from {record.state.value} to Failed"
                )
            record.state = VmState.FAILED
            record.last_error = message
            record.cancel_requested = False
            if problems:
                record.rollback_incomplete = True
                record.last_error = f"{message}; rollback incomplete: {'; '.join(problems)}"
            elif released:
                record.disk_image = None
                record.domain = None

        record = self.store.update(name, mutate)
        if problems:
            record_rollback_incomplete()
            log_event(f"[orchestrator] '{name}' -> Failed with incomplete rollback: {problems}", logging.ERROR)
        else:
            log_event(f"[orchestrator] '{name}' -> Failed: {message}", logging.WARNING)
        return record

    def _rollback(self, handle: Optional[DomainHandle], image: Optional[DiskImage]) -> list[str]:
        """Best-effort teardown; returns what could not be cleaned up."""
        problems = []
        if handle is not None:
            try:
                self._call("destroy_domain", self.control.destroy_domain, handle)
            except ControlPlaneError as e:
                if not e.not_found:
                    problems.append(str(e))
        if image is not None:
            try:
                self.provisioner.delete_image(image)
            except ImageError as e:
                problems.append(str(e))
        return problems

    def _patch(self, name: str, **changes: Any) -> VmRecord:
        def mutate(record: VmRecord) -> None:
            for key, value in changes.items():
                setattr(record, key, value)

        return self.store.update(name, mutate)

    def _bump_attempt(self, name: str, error: str) -> None:
        def mutate(record: VmRecord) -> None:
            record.attempt += 1
            record.last_error = error

        self.store.update(name, mutate)

    def _release(self, name: str) -> Optional[VmRecord]:
        record = self.store.release(name)
        # a delete that landed after the last transition boundary
        if record is not None and record.delete_requested and self.store.acquire(name):
            log_event(f"[orchestrator] Running deferred delete of '{name}'")
            self._schedule(name, "delete", self._delete)
        return record
