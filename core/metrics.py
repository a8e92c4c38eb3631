import threading
import time
from typing import Iterable

import psutil
from prometheus_client import Counter, Gauge, Histogram

from config.settings import (
    HYPERVISOR_TYPE,
    METRICS_REFRESH_INTERVAL,
    VM_STORAGE_PATH,
)
from core.logger import log_event
from schemas.vm_schema import VmRecord, VmState

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vm_provisioner_requests_total",
    "Total HTTP requests to vm-provisioner",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vm_provisioner_request_latency_seconds",
    "Latency of HTTP requests to vm-provisioner",
    ["endpoint"],
)


# -----------------------------
# Provisioning metrics
# -----------------------------
PROVISION_SUBMISSIONS = Counter(
    "vm_provision_submissions_total",
    "Provision requests accepted, by whether they started a new attempt",
    ["kind"],
)

PROVISION_OUTCOMES = Counter(
    "vm_provision_outcomes_total",
    "Finished orchestrations by operation and result",
    ["operation", "result"],
)

PROVISION_RETRIES = Counter(
    "vm_provision_retries_total",
    "Retries of provisioning steps after retryable errors",
    ["step"],
)

CONTROL_PLANE_LATENCY = Histogram(
    "vm_control_plane_call_seconds",
    "Latency of control-plane calls",
    ["operation"],
)

ROLLBACKS_INCOMPLETE = Counter(
    "vm_rollbacks_incomplete_total",
    "Rollbacks or teardowns that left resources behind",
)

VM_STATES = Gauge(
    "vm_records_by_state",
    "Number of inventory records in each lifecycle state",
    ["state"],
)

# -----------------------------
# Host / capacity metrics
# -----------------------------
HOST_CPU_USAGE = Gauge(
    "vm_provisioner_host_cpu_usage_percent",
    "Host CPU usage in percent",
)

HOST_MEMORY_USAGE = Gauge(
    "vm_provisioner_host_memory_usage_percent",
    "Host memory usage in percent",
)

HOST_IMAGE_DISK_USAGE = Gauge(
    "vm_provisioner_image_storage_usage_percent",
    "Usage of the filesystem holding VM images, in percent",
)

HYPERVISOR_INFO = Gauge(
    "vm_provisioner_hypervisor_type",
    "Label gauge exposing configured hypervisor type (for Grafana filters)",
    ["type"],
)


def init_static_metrics() -> None:
    # Set a value 1.0 for the configured hypervisor type, 0.0 for others
    for hv in ["qemu", "kvm"]:
        value = 1.0 if hv == HYPERVISOR_TYPE else 0.0
        HYPERVISOR_INFO.labels(type=hv).set(value)


def record_submission(new_attempt: bool) -> None:
    PROVISION_SUBMISSIONS.labels(kind="new" if new_attempt else "duplicate").inc()


def record_outcome(operation: str, result: str) -> None:
    PROVISION_OUTCOMES.labels(operation=operation, result=result).inc()


def record_retry(step: str) -> None:
    PROVISION_RETRIES.labels(step=step).inc()


def record_rollback_incomplete() -> None:
    ROLLBACKS_INCOMPLETE.inc()


def observe_control_call(operation: str, seconds: float) -> None:
    CONTROL_PLANE_LATENCY.labels(operation=operation).observe(seconds)


def refresh_state_gauge(records: Iterable[VmRecord]) -> None:
    counts = {state: 0 for state in VmState}
    for record in records:
        counts[record.state] += 1
    for state, count in counts.items():
        VM_STATES.labels(state=state.value).set(count)


def start_background_collectors(list_records=None) -> None:
    """
    Collect host-level capacity metrics periodically using psutil, and the
    per-state record counts when `list_records` is given.
    """

    def loop() -> None:
        log_event("[metrics] Starting background host metrics collector")
        while True:
            try:
                HOST_CPU_USAGE.set(psutil.cpu_percent(interval=1))
                HOST_MEMORY_USAGE.set(psutil.virtual_memory().percent)
                HOST_IMAGE_DISK_USAGE.set(psutil.disk_usage(str(VM_STORAGE_PATH)).percent)
                if list_records is not None:
                    refresh_state_gauge(list_records())
            except Exception as e:  # noqa: BLE001
                log_event(f"[metrics] Collector error: {e}")
            time.sleep(METRICS_REFRESH_INTERVAL)

    t = threading.Thread(target=loop, daemon=True)
    t.start()
