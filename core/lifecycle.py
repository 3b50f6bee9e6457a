import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.settings import (
    CREDENTIAL_TTL_SECONDS,
    DEFAULT_BASE_IMAGE,
    DEFAULT_MEMORY_GB,
    DEFAULT_VCPU,
    PROVISION_MAX_WORKERS,
    VM_SSH_DEFAULT_PORT,
    VM_SSH_USERNAME,
    VM_TTL_HOURS,
)
from core.billing import BillingTracker
from core.credentials import CredentialIssuer
from core.errors import (
    INVALID_TRANSITION,
    NOT_FOUND,
    PROVIDER_FAILURE,
    OperationResult,
    invalid_transition,
    not_found,
)
from core.logger import log_event
from core.metrics import record_transition, record_vm_created, record_vm_deleted
from core.models import (
    DELETABLE_STATUSES,
    EXTENDABLE_STATUSES,
    STARTABLE_STATUSES,
    BillingSession,
    VMInstance,
    VMMetadata,
    VMStatus,
    utcnow,
)
from core.provider import ProviderClient, ProviderResult
from core.quota import QuotaGuard
from core.store import StateStore

PROVISIONING = VMStatus.PROVISIONING.value
READY = VMStatus.READY.value
STARTING = VMStatus.STARTING.value
RUNNING = VMStatus.RUNNING.value
STOPPING = VMStatus.STOPPING.value
STOPPED = VMStatus.STOPPED.value
EXPIRING = VMStatus.EXPIRING.value
EXPIRED = VMStatus.EXPIRED.value
DELETING = VMStatus.DELETING.value
FAILED = VMStatus.FAILED.value


def _tenant_not_found(tenant_id: str) -> OperationResult:
    return OperationResult.failure(NOT_FOUND, f"Tenant '{tenant_id}' not found", tenant_id=tenant_id)


def _provider_failure(operation: str, vm: Optional[VMInstance], result: ProviderResult) -> OperationResult:
    return OperationResult.failure(
        PROVIDER_FAILURE,
        f"Failed to {operation} VM: {result.error}",
        vm=vm,
        provider_error=result.error,
        provider_status=result.status_code,
    )


class VMOrchestrator:
    """
    VM lifecycle state machine.

        provisioning -> ready -> running <-> stopped
        * -> failed, running -> expired, (most states) -> deleted

    Each user operation claims the VM by flipping it into a transitional
    status (starting/stopping/expiring/deleting) with a compare-and-set,
    calls the provider with no store lock held, then commits the final
    status with another compare-and-set. A caller working from a stale
    status loses the compare-and-set and gets an ``invalid_transition``.
    """

    def __init__(
        self,
        store: StateStore,
        provider: ProviderClient,
        guard: Optional[QuotaGuard] = None,
        billing: Optional[BillingTracker] = None,
        credentials: Optional[CredentialIssuer] = None,
        clock: Callable[[], datetime] = utcnow,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.clock = clock
        self.guard = guard or QuotaGuard(store, clock)
        self.billing = billing or BillingTracker()
        self.credentials = credentials or CredentialIssuer(store, clock)
        self._executor = executor or ThreadPoolExecutor(
            max_workers=PROVISION_MAX_WORKERS,
            thread_name_prefix="provision",
        )
        self._pending: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_vm(self, tenant_id: str, vm_id: str) -> Optional[VMInstance]:
        return self.store.get_vm(vm_id, tenant_id=tenant_id)

    def list_vms(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
    ) -> Tuple[List[VMInstance], int]:
        return self.store.list_vms(tenant_id, page=page, limit=limit, status=status)

    def usage_stats(self, tenant_id: str) -> Dict[str, int]:
        return self.store.usage_stats(tenant_id)

    # ------------------------------------------------------------------
    # Create / provision
    # ------------------------------------------------------------------
    @staticmethod
    def _provider_name(tenant_id: str) -> str:
        return f"cc-{tenant_id[:8]}-{uuid.uuid4().hex[:8]}"

    def create_vm(
        self,
        tenant_id: str,
        vcpu: Optional[int] = None,
        memory_gb: Optional[int] = None,
        base_image: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> OperationResult:
        vcpu = vcpu or DEFAULT_VCPU
        memory_gb = memory_gb or DEFAULT_MEMORY_GB
        base_image = base_image or DEFAULT_BASE_IMAGE
        now = self.clock()

        with self.store.transaction() as db:
            tenant = self.store.lock_tenant(db, tenant_id)
            if tenant is None:
                return _tenant_not_found(tenant_id)

            error = self.guard.check_create(db, tenant, vcpu, memory_gb)
            if error:
                record_transition("create", error.kind)
                return OperationResult.from_error(error)

            vm = self.store.insert_vm(
                db,
                tenant_id=tenant_id,
                display_name=display_name,
                provider_name=self._provider_name(tenant_id),
                status=PROVISIONING,
                vcpu=vcpu,
                memory_gb=memory_gb,
                base_image=base_image,
                expires_at=now + timedelta(hours=VM_TTL_HOURS),
            )

        log_event(
            f"[lifecycle] VM {vm.id} ({vm.provider_name}) allocated for tenant {tenant_id} "
            f"(vcpu={vcpu}, memory={memory_gb}GB, image={base_image})"
        )
        record_vm_created(tenant_id)

        future = self._executor.submit(self._provision, vm.id)
        with self._pending_lock:
            self._pending[vm.id] = future
        future.add_done_callback(lambda _f, vm_id=vm.id: self._forget_pending(vm_id))

        return OperationResult.success(vm, "VM is being provisioned")

    def _forget_pending(self, vm_id: str) -> None:
        with self._pending_lock:
            self._pending.pop(vm_id, None)

    def wait_for_provisioning(self, vm_id: str, timeout: Optional[float] = None) -> Optional[VMInstance]:
        """Block until the background create call for ``vm_id`` has finished."""
        with self._pending_lock:
            future = self._pending.get(vm_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get_vm(vm_id)

    def _provision(self, vm_id: str) -> None:
        try:
            self._run_provision(vm_id)
        except Exception as e:  # noqa: BLE001
            log_event(f"[lifecycle] Provisioning of VM {vm_id} crashed: {e!r}", logging.ERROR)
            raise

    def _run_provision(self, vm_id: str) -> None:
        vm = self.store.get_vm(vm_id)
        if vm is None or vm.status != PROVISIONING:
            log_event(f"[lifecycle] VM {vm_id} no longer provisioning, skipping create call")
            return

        result = self.provider.create_vm(vm.provider_name, vm.vcpu, vm.memory_gb, vm.base_image)
        if not result.ok:
            self._fail_provisioning(vm_id, result.error or "Failed to create VM")
            return

        values = {"status": READY, "provider_vm_id": result.provider_id}
        if result.ip_address:
            values["ip_address"] = result.ip_address
        if result.ssh_port:
            values["ssh_port"] = result.ssh_port

        try:
            with self.store.transaction() as db:
                stored = self.store.compare_and_set(db, vm_id, values, statuses=(PROVISIONING,))
        except IntegrityError:
            # the provider handed back an identifier another VM row already owns
            self._fail_provisioning(
                vm_id,
                f"Provider identifier '{result.provider_id}' is already recorded for another VM",
            )
            return

        if not stored:
            log_event(
                f"[lifecycle] VM {vm_id} left provisioning while the create call was in flight; "
                f"deleting provider VM {vm.provider_name}",
                logging.WARNING,
            )
            self._best_effort("delete", self.provider.delete_vm, vm.provider_name)
            return

        record_transition("create", "ok")
        log_event(f"[lifecycle] VM {vm_id} is ready (provider id={result.provider_id})")

    def _fail_provisioning(self, vm_id: str, reason: str) -> None:
        def _record(record: VMMetadata) -> None:
            record.error = reason

        update = self.store.mutate_metadata(
            vm_id,
            _record,
            statuses=(PROVISIONING,),
            values={"status": FAILED},
        )
        record_transition("create", "provider_failure")
        if update.applied:
            log_event(f"[lifecycle] VM {vm_id} failed to provision: {reason}", logging.WARNING)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    def start_vm(self, tenant_id: str, vm_id: str) -> OperationResult:
        with self.store.transaction() as db:
            tenant = self.store.lock_tenant(db, tenant_id)
            if tenant is None:
                return _tenant_not_found(tenant_id)
            vm = self.store.get_vm(vm_id, tenant_id=tenant_id, db=db)
            if vm is None:
                return not_found(vm_id)
            if vm.status not in STARTABLE_STATUSES:
                record_transition("start", INVALID_TRANSITION)
                return invalid_transition(vm, "start", STARTABLE_STATUSES)

            error = self.guard.check_start(db, tenant, vm_id)
            if error:
                record_transition("start", error.kind)
                return OperationResult.from_error(error, vm=vm)

            previous = vm.status
            if not self.store.compare_and_set(db, vm_id, {"status": STARTING}, statuses=(previous,)):
                return invalid_transition(vm, "start", STARTABLE_STATUSES)

        result = self.provider.start_vm(vm.provider_name)
        if not result.ok:
            self.store.release_claim(vm_id, STARTING, previous)
            record_transition("start", PROVIDER_FAILURE)
            log_event(f"[lifecycle] Provider start failed for VM {vm_id}: {result.error}", logging.WARNING)
            return _provider_failure("start", self.store.get_vm(vm_id), result)

        now = self.clock()
        with self.store.transaction() as db:
            values = {
                "status": RUNNING,
                "started_at": func.coalesce(VMInstance.started_at, now),
            }
            if result.ip_address:
                values["ip_address"] = result.ip_address
            if result.ssh_port:
                values["ssh_port"] = result.ssh_port
            if not self.store.compare_and_set(db, vm_id, values, statuses=(STARTING,)):
                log_event(
                    f"[lifecycle] VM {vm_id} left 'starting' while the provider call was in flight",
                    logging.WARNING,
                )
                return OperationResult.failure(
                    INVALID_TRANSITION,
                    f"VM '{vm_id}' changed state while starting",
                    vm=self.store.get_vm(vm_id, db=db),
                )
            tier = self.store.get_tenant(tenant_id, db=db).tier
            self.billing.open(db, vm_id, tenant_id, tier, now)

        record_transition("start", "ok")
        log_event(f"[lifecycle] VM {vm_id} started")
        return OperationResult.success(self.store.get_vm(vm_id), "VM started successfully")

    def stop_vm(self, tenant_id: str, vm_id: str) -> OperationResult:
        vm = self.store.get_vm(vm_id, tenant_id=tenant_id)
        if vm is None:
            return not_found(vm_id)
        if vm.status != RUNNING:
            record_transition("stop", INVALID_TRANSITION)
            return invalid_transition(vm, "stop", (RUNNING,))

        with self.store.transaction() as db:
            if not self.store.compare_and_set(db, vm_id, {"status": STOPPING}, statuses=(RUNNING,)):
                return invalid_transition(self.store.get_vm(vm_id, db=db) or vm, "stop", (RUNNING,))

        result = self.provider.stop_vm(vm.provider_name)
        if not result.ok:
            self.store.release_claim(vm_id, STOPPING, RUNNING)
            record_transition("stop", PROVIDER_FAILURE)
            log_event(f"[lifecycle] Provider stop failed for VM {vm_id}: {result.error}", logging.WARNING)
            return _provider_failure("stop", self.store.get_vm(vm_id), result)

        ended, session = self._end_running_period(vm_id, STOPPING, STOPPED)
        if not ended:
            return OperationResult.failure(
                INVALID_TRANSITION,
                f"VM '{vm_id}' changed state while stopping",
                vm=self.store.get_vm(vm_id),
            )

        record_transition("stop", "ok")
        log_event(
            f"[lifecycle] VM {vm_id} stopped"
            + (f", session cost={session.cost_cents} cents" if session is not None else "")
        )
        return OperationResult.success(self.store.get_vm(vm_id), "VM stopped successfully")

    def _end_running_period(
        self,
        vm_id: str,
        claimed_status: str,
        final_status: str,
    ) -> Tuple[bool, Optional[BillingSession]]:
        """Commit the final status and close the billing session in one transaction."""
        now = self.clock()
        with self.store.transaction() as db:
            if not self.store.compare_and_set(
                db,
                vm_id,
                {"status": final_status, "stopped_at": now},
                statuses=(claimed_status,),
            ):
                return False, None
            return True, self.close_billing(db, vm_id, now)

    def close_billing(self, db: Session, vm_id: str, now: datetime) -> Optional[BillingSession]:
        """Close the VM's open session, if any, and charge it against credits."""
        session, closed_now = self.billing.close_open_for_vm(db, vm_id, now)
        if session is None or not closed_now:
            return session
        charged = self.guard.settle(db, session.tenant_id, session.cost_cents)
        if charged:
            self.billing.record_charge(db, session.id, charged)
            session = self.billing.get_session(db, session.id)
        return session

    # ------------------------------------------------------------------
    # Forced expiry
    # ------------------------------------------------------------------
    def force_expire(self, vm_id: str) -> OperationResult:
        """Expire a running VM whose ``expires_at`` has been reached."""
        now = self.clock()
        with self.store.transaction() as db:
            claimed = self.store.compare_and_set(
                db,
                vm_id,
                {"status": EXPIRING, "status_changed_at": now},
                statuses=(RUNNING,),
                expires_before=now,
            )
        if not claimed:
            vm = self.store.get_vm(vm_id)
            if vm is None:
                return not_found(vm_id)
            return invalid_transition(vm, "expire", (RUNNING,))
        return self.complete_expiry(vm_id)

    def complete_expiry(self, vm_id: str) -> OperationResult:
        """Second half of a forced expiry, for a VM already claimed as ``expiring``."""
        vm = self.store.get_vm(vm_id)
        if vm is None:
            return not_found(vm_id)
        if vm.status != EXPIRING:
            return invalid_transition(vm, "expire", (EXPIRING,))

        result = self.provider.stop_vm(vm.provider_name)
        if not result.ok:
            # hand the VM back so the next sweep retries it
            self.store.release_claim(vm_id, EXPIRING, RUNNING)
            record_transition("expire", PROVIDER_FAILURE)
            return _provider_failure("expire", vm, result)

        ended, session = self._end_running_period(vm_id, EXPIRING, EXPIRED)
        if not ended:
            return OperationResult.failure(
                INVALID_TRANSITION,
                f"VM '{vm_id}' changed state while expiring",
                vm=self.store.get_vm(vm_id),
            )

        record_transition("expire", "ok")
        log_event(
            f"[lifecycle] VM {vm_id} expired"
            + (f", session cost={session.cost_cents} cents" if session is not None else "")
        )
        return OperationResult.success(self.store.get_vm(vm_id), "VM expired")

    # ------------------------------------------------------------------
    # Delete / extend
    # ------------------------------------------------------------------
    def delete_vm(self, tenant_id: str, vm_id: str) -> OperationResult:
        vm = self.store.get_vm(vm_id, tenant_id=tenant_id)
        if vm is None:
            return not_found(vm_id)
        if vm.status not in DELETABLE_STATUSES:
            record_transition("delete", INVALID_TRANSITION)
            return invalid_transition(vm, "delete", DELETABLE_STATUSES)

        previous = vm.status
        with self.store.transaction() as db:
            if not self.store.compare_and_set(db, vm_id, {"status": DELETING}, statuses=(previous,)):
                return invalid_transition(self.store.get_vm(vm_id, db=db) or vm, "delete", DELETABLE_STATUSES)

        if previous == RUNNING:
            self._best_effort("stop", self.provider.stop_vm, vm.provider_name)

        # the record is going away; nothing may stay billable
        with self.store.transaction() as db:
            self.close_billing(db, vm_id, self.clock())

        self._best_effort("delete", self.provider.delete_vm, vm.provider_name)

        with self.store.transaction() as db:
            self.store.delete_vm(db, vm_id)

        record_vm_deleted(tenant_id)
        record_transition("delete", "ok")
        log_event(f"[lifecycle] VM {vm_id} ({vm.provider_name}) deleted from status={previous}")
        return OperationResult.success(vm, "VM deleted successfully")

    def extend_vm(self, tenant_id: str, vm_id: str) -> OperationResult:
        new_expiry = self.clock() + timedelta(hours=VM_TTL_HOURS)

        def _bump(record: VMMetadata) -> int:
            record.extensions += 1
            return record.extensions

        update = self.store.mutate_metadata(
            vm_id,
            _bump,
            statuses=EXTENDABLE_STATUSES,
            tenant_id=tenant_id,
            values={"expires_at": new_expiry},
        )
        if update.vm is None:
            return not_found(vm_id)
        if not update.applied:
            record_transition("extend", INVALID_TRANSITION)
            return invalid_transition(update.vm, "extend", EXTENDABLE_STATUSES)

        record_transition("extend", "ok")
        log_event(f"[lifecycle] VM {vm_id} extended to {new_expiry.isoformat()} (extensions={update.outcome})")
        return OperationResult.success(update.vm, "VM expiry extended")

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------
    def connect(self, tenant_id: str, vm_id: str) -> OperationResult:
        vm = self.store.get_vm(vm_id, tenant_id=tenant_id)
        if vm is None:
            return not_found(vm_id)
        if vm.status != RUNNING:
            return OperationResult.failure(
                INVALID_TRANSITION,
                "VM is not running",
                vm=vm,
                current_status=vm.status,
            )

        credential = self.credentials.issue(vm_id)
        if credential is None:
            return not_found(vm_id)

        minutes = max(CREDENTIAL_TTL_SECONDS // 60, 1)
        connection = {
            "host": vm.ip_address,
            "port": vm.ssh_port or VM_SSH_DEFAULT_PORT,
            "username": VM_SSH_USERNAME,
            "password": credential.secret,
            "expires_at": credential.expires_at,
        }
        return OperationResult.success(
            vm,
            f"Credentials expire in {minutes} minutes. Use them immediately.",
            data={"connection": connection},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _best_effort(operation: str, call: Callable[[str], ProviderResult], name: str) -> ProviderResult:
        result = call(name)
        if not result.ok:
            log_event(
                f"[lifecycle] Best-effort provider {operation} failed for {name}: {result.error}",
                logging.WARNING,
            )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self.provider.close()
