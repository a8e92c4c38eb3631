import time
import uuid
from typing import Optional

import libvirt

from config.settings import (
    HYPERVISOR_TYPE,
    LIBVIRT_URI,
    VM_BRIDGE_NAME,
    VM_ISOLATED_NETWORK,
    VM_NAT_NETWORK,
    VM_STOP_TIMEOUT,
)
from core.errors import ControlPlaneError, ControlPlaneErrorKind
from core.logger import log_event
from core.virt_client import VirtControlClient
from schemas.vm_schema import DomainHandle, DomainSpec, DomainStatus, NetworkMode


def _libvirt_error_handler(ctx, error):
    """
    Custom libvirt error handler to suppress noisy stderr messages like:
    'Domain not found: no domain with matching name ...'
    """
    pass


# libvirt error codes worth retrying; looked up by name because older
# bindings do not define all of them
_TRANSIENT_CODE_NAMES = (
    "VIR_ERR_OPERATION_TIMEOUT",
    "VIR_ERR_RPC",
    "VIR_ERR_SYSTEM_ERROR",
    "VIR_ERR_NO_CONNECT",
    "VIR_ERR_AGENT_UNRESPONSIVE",
    "VIR_ERR_RESOURCE_BUSY",
    "VIR_ERR_OPERATION_ABORTED",
)

# libvirt states:
# 0: no state, 1: running, 2: blocked, 3: paused, 4: shutting down,
# 5: shut off, 6: crashed, 7: pmsuspended
STATE_MAP = {
    0: DomainStatus.NO_STATE,
    1: DomainStatus.RUNNING,
    2: DomainStatus.BLOCKED,
    3: DomainStatus.PAUSED,
    4: DomainStatus.SHUTTING_DOWN,
    5: DomainStatus.SHUT_OFF,
    6: DomainStatus.CRASHED,
    7: DomainStatus.SUSPENDED,
}


def classify_libvirt_error(e: "libvirt.libvirtError", operation: str) -> ControlPlaneError:
    code = e.get_error_code()
    if code == libvirt.VIR_ERR_NO_DOMAIN:
        kind = ControlPlaneErrorKind.NOT_FOUND
    elif code in {getattr(libvirt, n) for n in _TRANSIENT_CODE_NAMES if hasattr(libvirt, n)}:
        kind = ControlPlaneErrorKind.TRANSIENT
    else:
        kind = ControlPlaneErrorKind.PERMANENT
    return ControlPlaneError(kind, f"{operation} failed: {e}", operation=operation)


class LibvirtControlClient(VirtControlClient):
    """
    VirtControlClient backed by libvirt.

    By switching LIBVIRT_URI (and HYPERVISOR_TYPE) in config/settings.py this
    client can talk to local or remote QEMU/KVM hosts.
    """

    def __init__(
        self,
        uri: str = LIBVIRT_URI,
        stop_timeout: int = VM_STOP_TIMEOUT,
        poll_interval: float = 1.0,
    ) -> None:
        # Register global libvirt error handler to avoid noisy stderr prints
        libvirt.registerErrorHandler(_libvirt_error_handler, None)

        self.uri = uri
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, "connect") from e
        if self.conn is None:
            raise ControlPlaneError(
                ControlPlaneErrorKind.PERMANENT,
                f"Failed to connect to hypervisor via libvirt URI: {uri}",
                operation="connect",
            )
        log_event(f"[libvirt] Connected to hypervisor via libvirt URI={uri}, type={HYPERVISOR_TYPE}")

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    def _lookup(self, handle: DomainHandle, operation: str):
        try:
            if handle.uuid:
                return self.conn.lookupByUUIDString(handle.uuid)
            return self.conn.lookupByName(handle.name)
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, operation) from e

    def _state(self, dom, operation: str) -> int:
        try:
            return dom.info()[0]
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, operation) from e

    @staticmethod
    def _interface_xml(mode: NetworkMode) -> str:
        if mode == NetworkMode.BRIDGED:
            return f"""
            <interface type='bridge'>
              <source bridge='{VM_BRIDGE_NAME}'/>
              <model type='virtio'/>
            </interface>"""
        network = VM_NAT_NETWORK if mode == NetworkMode.NAT else VM_ISOLATED_NETWORK
        return f"""
            <interface type='network'>
              <source network='{network}'/>
              <model type='virtio'/>
            </interface>"""

    @classmethod
    def _generate_domain_xml(cls, spec: DomainSpec, vm_uuid: str) -> str:
        """
        Minimal domain XML definition suitable for QEMU/KVM style hypervisors.
        """
        domain_type = "kvm" if HYPERVISOR_TYPE == "kvm" else "qemu"
        return f"""
        <domain type='{domain_type}'>
          <name>{spec.name}</name>
          <uuid>{vm_uuid}</uuid>
          <memory unit='MiB'>{spec.memory_mib}</memory>
          <vcpu>{spec.vcpu_count}</vcpu>
          <os>
            <type arch='x86_64'>hvm</type>
            <boot dev='hd'/>
          </os>
          <devices>
            <disk type='file' device='disk'>
              <driver name='qemu' type='{spec.disk_format}'/>
              <source file='{spec.disk_path}'/>
              <target dev='vda' bus='virtio'/>
            </disk>{cls._interface_xml(spec.network_mode)}
            <graphics type='vnc' port='-1' autoport='yes'/>
            <console type='pty'/>
          </devices>
        </domain>
        """

    # ------------------------------------------------------------------
    # VirtControlClient
    # ------------------------------------------------------------------
    def create_domain(self, spec: DomainSpec) -> DomainHandle:
        try:
            dom = self.conn.lookupByName(spec.name)
            log_event(f"[libvirt] Domain '{spec.name}' already defined, reusing it")
            return DomainHandle(name=spec.name, uuid=dom.UUIDString())
        except libvirt.libvirtError as e:
            if e.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                raise classify_libvirt_error(e, "create_domain") from e

        vm_uuid = str(uuid.uuid4())
        domain_xml = self._generate_domain_xml(spec, vm_uuid)
        try:
            dom = self.conn.defineXML(domain_xml)
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, "create_domain") from e
        if dom is None:
            raise ControlPlaneError(
                ControlPlaneErrorKind.PERMANENT,
                "Failed to define libvirt domain from XML",
                operation="create_domain",
            )
        log_event(
            f"[libvirt] Defined domain '{spec.name}' (memory={spec.memory_mib}MiB, "
            f"vcpus={spec.vcpu_count}, network={spec.network_mode.value})"
        )
        return DomainHandle(name=spec.name, uuid=vm_uuid)

    def start_domain(self, handle: DomainHandle) -> None:
        """
        Start a domain.

        - If it is already running -> no-op.
        - If paused -> resume.
        - If shut off / crashed / no state -> start.
        """
        dom = self._lookup(handle, "start_domain")
        state = self._state(dom, "start_domain")
        try:
            if state == libvirt.VIR_DOMAIN_RUNNING:
                log_event(f"[libvirt] Domain '{handle.name}' already running")
                return

            if state == libvirt.VIR_DOMAIN_PAUSED:
                log_event(f"[libvirt] Resuming paused domain '{handle.name}'")
                dom.resume()
                return

            log_event(f"[libvirt] Starting domain '{handle.name}' from state={state}")
            dom.create()
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, "start_domain") from e

    def stop_domain(self, handle: DomainHandle, graceful: bool = True) -> None:
        """
        Stop a domain.

        - Already shut off -> no-op.
        - graceful: ACPI shutdown, wait up to stop_timeout, then destroy().
        - otherwise: destroy() straight away.
        """
        dom = self._lookup(handle, "stop_domain")
        state = self._state(dom, "stop_domain")

        if state == libvirt.VIR_DOMAIN_SHUTOFF:
            log_event(f"[libvirt] stop_domain called for '{handle.name}' but it is already shut off")
            return

        if graceful:
            try:
                log_event(f"[libvirt] Graceful shutdown requested for '{handle.name}' from state={state}")
                dom.shutdown()
            except libvirt.libvirtError as e:
                log_event(f"[libvirt] Graceful shutdown failed for '{handle.name}': {e}; forcing destroy")
            else:
                waited = 0.0
                while waited < self.stop_timeout:
                    if self._state(dom, "stop_domain") == libvirt.VIR_DOMAIN_SHUTOFF:
                        log_event(f"[libvirt] Domain '{handle.name}' shut off after {waited:.0f}s")
                        return
                    time.sleep(self.poll_interval)
                    waited += self.poll_interval
                log_event(
                    f"[libvirt] Domain '{handle.name}' did not shut down within "
                    f"{self.stop_timeout}s; forcing destroy"
                )

        try:
            dom.destroy()
            log_event(f"[libvirt] Domain '{handle.name}' powered off via destroy()")
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, "stop_domain") from e

    def destroy_domain(self, handle: DomainHandle) -> None:
        dom = self._lookup(handle, "destroy_domain")
        try:
            if dom.isActive():
                dom.destroy()
            dom.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE)
            log_event(f"[libvirt] Destroyed and undefined domain '{handle.name}'")
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, "destroy_domain") from e

    def get_status(self, handle: DomainHandle) -> DomainStatus:
        dom = self._lookup(handle, "get_status")
        return STATE_MAP.get(self._state(dom, "get_status"), DomainStatus.UNKNOWN)

    def list_domains(self) -> list[str]:
        try:
            return [dom.name() for dom in self.conn.listAllDomains()]
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(e, "list_domains") from e

    def close(self) -> Optional[int]:
        try:
            return self.conn.close()
        except libvirt.libvirtError as e:
            log_event(f"[libvirt] Error closing connection: {e}")
            return None
