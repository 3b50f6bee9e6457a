import os
import shutil
import threading
import time
import uuid
from typing import Optional

import libvirt

from config.settings import (
    BASE_IMAGE_DIR,
    LIBVIRT_URI,
    VM_STORAGE_PATH,
)
from core.logger import log_event
from core.provider import ProviderClient, ProviderResult

# libvirt states:
# 0: no state, 1: running, 2: blocked, 3: paused, 4: shutting down,
# 5: shut off, 6: crashed, 7: pmsuspended
# A blocked domain is running and waiting on I/O. Only shut off and crashed
# mean the guest is gone; the rest are reported as in-between states.
STATE_NAMES = {
    0: "unknown",
    1: "running",
    2: "running",
    3: "paused",
    4: "stopping",
    5: "stopped",
    6: "crashed",
    7: "paused",
}

ACTIVE_STATES = (1, 2)

SHUTDOWN_TIMEOUT_SEC = 15


def _libvirt_error_handler(ctx, error):
    """
    Custom libvirt error handler to suppress noisy stderr messages like:
    'Domain not found: no domain with matching name ...'
    """
    pass


class LibvirtProviderClient(ProviderClient):
    """
    Provider backed by a local hypervisor through libvirt.

    Creation clones ``<BASE_IMAGE_DIR>/<image>.qcow2`` and defines the domain
    without booting it, so a fresh VM lands in "ready" exactly like a remote
    provider's VM would.
    """

    name = "libvirt"

    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        libvirt.registerErrorHandler(_libvirt_error_handler, None)
        self.uri = uri
        self._conn = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    def _connection(self):
        with self._lock:
            if self._conn is None or not self._conn.isAlive():
                self._conn = libvirt.open(self.uri)
                log_event(f"[provider] Connected to hypervisor via libvirt URI={self.uri}")
            return self._conn

    def _get_domain(self, name: str):
        """Return (domain, None) or (None, failure result)."""
        try:
            conn = self._connection()
        except libvirt.libvirtError as e:
            return None, ProviderResult.failure(f"libvirt connection error: {e}")
        try:
            return conn.lookupByName(name), None
        except libvirt.libvirtError:
            return None, ProviderResult.failure(f"VM '{name}' not found", status_code=404)

    def _clone_base_image(self, name: str, image: str) -> str:
        base_image = BASE_IMAGE_DIR / f"{image}.qcow2"
        if not base_image.exists():
            raise FileNotFoundError(f"Base image not found at {base_image}")

        VM_STORAGE_PATH.mkdir(parents=True, exist_ok=True)
        vm_image_path = VM_STORAGE_PATH / f"{name}.qcow2"
        if vm_image_path.exists():
            raise FileExistsError(f"VM image already exists for {name} at {vm_image_path}")

        log_event(f"[provider] Copying base image from {base_image} to {vm_image_path}")
        shutil.copy2(base_image, vm_image_path)
        return str(vm_image_path)

    @staticmethod
    def _generate_domain_xml(
        name: str,
        vm_uuid: str,
        vm_image: str,
        memory_gb: int,
        vcpus: int,
    ) -> str:
        """
        Minimal domain XML definition suitable for QEMU/KVM style hypervisors.
        """
        return f"""
        <domain type='kvm'>
          <name>{name}</name>
          <uuid>{vm_uuid}</uuid>
          <memory unit='GiB'>{memory_gb}</memory>
          <vcpu>{vcpus}</vcpu>
          <os>
            <type arch='x86_64'>hvm</type>
            <boot dev='hd'/>
          </os>
          <devices>
            <disk type='file' device='disk'>
              <driver name='qemu' type='qcow2'/>
              <source file='{vm_image}'/>
              <target dev='vda' bus='virtio'/>
            </disk>
            <interface type='network'>
              <source network='default'/>
              <model type='virtio'/>
            </interface>
            <graphics type='vnc' port='-1' autoport='yes'/>
            <console type='pty'/>
          </devices>
        </domain>
        """

    @staticmethod
    def _domain_address(dom) -> Optional[str]:
        try:
            interfaces = dom.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE)
        except libvirt.libvirtError:
            return None
        for iface in interfaces.values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    return addr.get("addr")
        return None

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    def create_vm(self, name: str, vcpu: int, memory_gb: int, image: str) -> ProviderResult:
        try:
            conn = self._connection()
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"libvirt connection error: {e}")

        try:
            conn.lookupByName(name)
            return ProviderResult.failure(f"VM '{name}' already exists", status_code=409)
        except libvirt.libvirtError:
            pass

        try:
            vm_image = self._clone_base_image(name, image)
        except OSError as e:
            log_event(f"[provider] Failed to prepare disk for VM {name}: {e}")
            return ProviderResult.failure(str(e), status_code=500)

        vm_uuid = str(uuid.uuid4())
        domain_xml = self._generate_domain_xml(
            name=name,
            vm_uuid=vm_uuid,
            vm_image=vm_image,
            memory_gb=memory_gb,
            vcpus=vcpu,
        )
        try:
            dom = conn.defineXML(domain_xml)
            if dom is None:
                return ProviderResult.failure("Failed to define libvirt domain from XML", status_code=500)
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"libvirt error: {e}", status_code=500)

        log_event(f"[provider] Defined VM '{name}' (memory={memory_gb}GiB, vcpus={vcpu}, image={image})")
        return ProviderResult.success({"vm_id": vm_uuid, "status": "stopped"}, status_code=201)

    def start_vm(self, name: str) -> ProviderResult:
        """
        - If the VM is already running -> treat as success.
        - If paused -> resume.
        - If shut off / crashed / no state -> start.
        """
        dom, failure = self._get_domain(name)
        if failure:
            return failure
        try:
            state = dom.info()[0]
            if state == libvirt.VIR_DOMAIN_PAUSED:
                log_event(f"[provider] Resuming paused VM '{name}'")
                dom.resume()
            elif state not in ACTIVE_STATES:
                log_event(f"[provider] Starting VM '{name}' from state={state}")
                dom.create()
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"Failed to start VM '{name}': {e}", status_code=500)

        data = {"status": "running"}
        address = self._domain_address(dom)
        if address:
            data["ip"] = address
        return ProviderResult.success(data)

    def stop_vm(self, name: str) -> ProviderResult:
        """
        Strategy:
        - If VM is already shut off -> no-op, treat as success.
        - Otherwise:
            1) Try graceful shutdown (ACPI)
            2) Wait a bit for it to actually stop
            3) If still running, force poweroff with destroy()
        """
        dom, failure = self._get_domain(name)
        if failure:
            return failure

        try:
            state = dom.info()[0]
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"Failed to inspect VM '{name}': {e}", status_code=500)

        if state == libvirt.VIR_DOMAIN_SHUTOFF:
            log_event(f"[provider] stop_vm called for '{name}' but it is already shut off - no-op")
            return ProviderResult.success({"status": "stopped"})

        try:
            log_event(f"[provider] Graceful shutdown requested for VM '{name}' from state={state}")
            dom.shutdown()
        except libvirt.libvirtError as e:
            log_event(f"[provider] Graceful shutdown failed for '{name}': {e}; will try forced destroy")

        waited = 0
        curr_state = state
        while waited < SHUTDOWN_TIMEOUT_SEC:
            try:
                curr_state = dom.info()[0]
            except libvirt.libvirtError as e:
                return ProviderResult.failure(
                    f"Failed to inspect VM '{name}' during shutdown: {e}",
                    status_code=500,
                )
            if curr_state == libvirt.VIR_DOMAIN_SHUTOFF:
                log_event(f"[provider] VM '{name}' gracefully shut off after {waited}s")
                return ProviderResult.success({"status": "stopped"})
            time.sleep(1)
            waited += 1

        log_event(
            f"[provider] VM '{name}' did not shut down within {SHUTDOWN_TIMEOUT_SEC}s "
            f"(last state={curr_state}); attempting forced destroy()"
        )
        try:
            dom.destroy()
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"Failed to force stop VM '{name}': {e}", status_code=500)
        log_event(f"[provider] VM '{name}' forcefully powered off via destroy()")
        return ProviderResult.success({"status": "stopped"})

    def delete_vm(self, name: str) -> ProviderResult:
        dom, failure = self._get_domain(name)
        if failure:
            return failure

        try:
            if dom.isActive():
                dom.destroy()
        except libvirt.libvirtError as e:
            log_event(f"[provider] destroy before delete failed for '{name}': {e}")

        disk_path = VM_STORAGE_PATH / f"{name}.qcow2"
        try:
            dom.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE)
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"Failed to delete VM '{name}': {e}", status_code=500)

        if os.path.exists(disk_path):
            try:
                os.remove(disk_path)
            except OSError as e:
                log_event(f"[provider] Could not remove disk {disk_path} of VM '{name}': {e}")
                return ProviderResult.failure(
                    f"VM '{name}' undefined but its disk could not be removed: {e}",
                    status_code=500,
                )
        log_event(f"[provider] Deleted VM '{name}', disk={disk_path}")
        return ProviderResult.success({"status": "deleted"})

    def get_vm_status(self, name: str) -> ProviderResult:
        dom, failure = self._get_domain(name)
        if failure:
            return failure
        try:
            state = dom.info()[0]
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"Failed to inspect VM '{name}': {e}", status_code=500)

        data = {"status": STATE_NAMES.get(state, "unknown"), "state_code": state}
        if state in ACTIVE_STATES:
            address = self._domain_address(dom)
            if address:
                data["ip"] = address
        return ProviderResult.success(data)

    def get_health(self) -> ProviderResult:
        try:
            conn = self._connection()
            return ProviderResult.success({"status": "ok", "hypervisor": conn.getType()})
        except libvirt.libvirtError as e:
            return ProviderResult.failure(f"libvirt connection error: {e}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except libvirt.libvirtError:
                    pass
                self._conn = None
