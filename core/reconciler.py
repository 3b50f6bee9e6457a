"""
Background reconciliation: the expiry sweep and the drift sync.

Both sweeps run each VM's work on a small thread pool with a bounded overall
timeout. One VM's provider failure or slow call never stops the others; work
that did not finish in time is picked up by the next run.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from config.settings import (
    DRIFT_SYNC_INTERVAL_SECONDS,
    EXPIRY_SWEEP_INTERVAL_SECONDS,
    SWEEP_MAX_WORKERS,
    SWEEP_TIMEOUT_SECONDS,
    TRANSITION_STALE_SECONDS,
)
from core.lifecycle import VMOrchestrator
from core.logger import log_event
from core.metrics import record_sweep
from core.models import VMInstance, VMMetadata, VMStatus, utcnow
from core.provider import ProviderClient
from core.store import StateStore

EXPIRY = "expiry"
DRIFT = "drift"

# provider answers that describe a VM between states rather than one that is gone
UNSETTLED_PROVIDER_STATES = ("starting", "stopping", "paused", "pending", "unknown")


class SweepResult(BaseModel):
    sweep: str
    affected: int = 0
    failed: int = 0
    candidates: int = 0
    # set only when the sweep could not even list its candidates
    error: Optional[str] = None


class Reconciler:
    def __init__(
        self,
        store: StateStore,
        orchestrator: VMOrchestrator,
        provider: Optional[ProviderClient] = None,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = SWEEP_TIMEOUT_SECONDS,
        max_workers: int = SWEEP_MAX_WORKERS,
        stale_seconds: int = TRANSITION_STALE_SECONDS,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.provider = provider or orchestrator.provider
        self.clock = clock
        self.timeout = timeout
        self.max_workers = max_workers
        self.stale = timedelta(seconds=stale_seconds)
        self.last_results: Dict[str, SweepResult] = {}

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------
    def run_expiry_sweep(self) -> SweepResult:
        now = self.clock()
        try:
            claimed = self.store.claim_expired(now, now - self.stale)
        except SQLAlchemyError as e:
            log_event(f"[reconciler] Expiry sweep aborted, could not claim VMs: {e}", logging.ERROR)
            return self._finish(SweepResult(sweep=EXPIRY, error=str(e)))

        result = SweepResult(sweep=EXPIRY, candidates=len(claimed))
        if not claimed:
            return self._finish(result)

        log_event(f"[reconciler] Expiry sweep claimed {len(claimed)} VM(s)")
        outcomes = self._run_each(claimed, self._expire_one, on_abandon=self._release_expiry)
        for vm_id, outcome in outcomes.items():
            if outcome:
                result.affected += 1
            else:
                result.failed += 1
        return self._finish(result)

    def _expire_one(self, vm_id: str) -> bool:
        outcome = self.orchestrator.complete_expiry(vm_id)
        if not outcome.ok:
            log_event(
                f"[reconciler] Could not expire VM {vm_id}: {outcome.error.message}",
                logging.WARNING,
            )
        return outcome.ok

    def _release_expiry(self, vm_id: str) -> None:
        if self.store.release_claim(vm_id, VMStatus.EXPIRING.value, VMStatus.RUNNING.value):
            log_event(f"[reconciler] Released expiry claim on VM {vm_id} for the next sweep")

    # ------------------------------------------------------------------
    # Drift sync
    # ------------------------------------------------------------------
    def run_drift_sync(self) -> SweepResult:
        now = self.clock()
        try:
            candidates = self.store.drift_candidates(now - self.stale)
        except SQLAlchemyError as e:
            log_event(f"[reconciler] Drift sync aborted, could not list VMs: {e}", logging.ERROR)
            return self._finish(SweepResult(sweep=DRIFT, error=str(e)))

        result = SweepResult(sweep=DRIFT, candidates=len(candidates))
        if not candidates:
            return self._finish(result)

        by_id = {vm.id: vm for vm in candidates}
        outcomes = self._run_each(list(by_id), lambda vm_id: self._sync_one(by_id[vm_id]))
        for vm_id, outcome in outcomes.items():
            if outcome is None:
                result.failed += 1
            elif outcome:
                result.affected += 1
        return self._finish(result)

    def _sync_one(self, vm: VMInstance) -> bool:
        """Returns True when the local record was corrected."""
        if vm.status == VMStatus.PROVISIONING.value:
            return self._fail_abandoned_create(vm)

        observed = self.provider.get_vm_status(vm.provider_name)
        now = self.clock()

        if observed.ok and observed.vm_status == VMStatus.RUNNING.value:
            if vm.status == VMStatus.STARTING.value:
                return self._promote_start(vm, now)
            return False

        if observed.ok and (observed.vm_status is None or observed.vm_status in UNSETTLED_PROVIDER_STATES):
            log_event(
                f"[reconciler] VM {vm.id} is '{observed.vm_status}' at the provider; left for the next sync"
            )
            return False

        if observed.ok:
            # provider answered and disagrees: the VM is definitely not running
            with self.store.transaction() as db:
                changed = self.store.compare_and_set(
                    db,
                    vm.id,
                    {"status": VMStatus.STOPPED.value, "stopped_at": now},
                    statuses=(vm.status,),
                    changed_at=vm.status_changed_at,
                    status_version=vm.status_version,
                )
                session = self.orchestrator.close_billing(db, vm.id, now) if changed else None
            if changed:
                log_event(
                    f"[reconciler] VM {vm.id} was '{vm.status}' locally but '{observed.vm_status}' "
                    f"at the provider; marked stopped"
                    + (f", session cost={session.cost_cents} cents" if session is not None else "")
                )
            return changed

        # unreachable provider or missing VM: state is ambiguous, billing stays open
        with self.store.transaction() as db:
            changed = self.store.compare_and_set(
                db,
                vm.id,
                {"status": VMStatus.UNKNOWN.value},
                statuses=(vm.status,),
                changed_at=vm.status_changed_at,
                status_version=vm.status_version,
            )
        if changed:
            reason = "not found at provider" if observed.not_found else observed.error
            log_event(
                f"[reconciler] VM {vm.id} marked unknown ({reason}); billing session left open for review",
                logging.WARNING,
            )
        return changed

    def _promote_start(self, vm: VMInstance, now: datetime) -> bool:
        with self.store.transaction() as db:
            changed = self.store.compare_and_set(
                db,
                vm.id,
                {
                    "status": VMStatus.RUNNING.value,
                    "started_at": func.coalesce(VMInstance.started_at, now),
                },
                statuses=(VMStatus.STARTING.value,),
                status_version=vm.status_version,
            )
            if changed and self.orchestrator.billing.get_open_session(db, vm.id) is None:
                tenant = self.store.get_tenant(vm.tenant_id, db=db)
                self.orchestrator.billing.open(db, vm.id, vm.tenant_id, tenant.tier, now)
        if changed:
            log_event(f"[reconciler] VM {vm.id} stuck in 'starting' is running at the provider; promoted")
        return changed

    def _fail_abandoned_create(self, vm: VMInstance) -> bool:
        def _record(record: VMMetadata) -> None:
            record.error = "Provisioning did not complete"

        update = self.store.mutate_metadata(
            vm.id,
            _record,
            statuses=(VMStatus.PROVISIONING.value,),
            values={"status": VMStatus.FAILED.value},
        )
        if not update.applied:
            return False
        log_event(f"[reconciler] VM {vm.id} abandoned in 'provisioning'; marked failed", logging.WARNING)
        cleanup = self.provider.delete_vm(vm.provider_name)
        if not cleanup.ok and not cleanup.not_found:
            log_event(
                f"[reconciler] Cleanup of provider VM {vm.provider_name} failed: {cleanup.error}",
                logging.WARNING,
            )
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _run_each(
        self,
        vm_ids: List[str],
        work: Callable[[str], bool],
        on_abandon: Optional[Callable[[str], None]] = None,
    ) -> Dict[str, Optional[bool]]:
        """
        Run ``work`` for every VM id concurrently.

        Maps each finished VM id to its boolean outcome, or to None when the
        work raised. VMs still queued when the timeout elapses are cancelled,
        handed to ``on_abandon`` and left out of the mapping.
        """
        outcomes: Dict[str, Optional[bool]] = {}
        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_workers, len(vm_ids))),
            thread_name_prefix="reconcile",
        )
        futures: Dict[Future, str] = {executor.submit(work, vm_id): vm_id for vm_id in vm_ids}
        done, not_done = wait(futures, timeout=self.timeout)

        for future in done:
            vm_id = futures[future]
            try:
                outcomes[vm_id] = bool(future.result())
            except Exception as e:  # noqa: BLE001
                log_event(f"[reconciler] Reconciling VM {vm_id} failed: {e!r}", logging.ERROR)
                outcomes[vm_id] = None

        for future in not_done:
            vm_id = futures[future]
            if future.cancel():
                log_event(f"[reconciler] VM {vm_id} not processed before the sweep timeout", logging.WARNING)
                if on_abandon is not None:
                    try:
                        on_abandon(vm_id)
                    except SQLAlchemyError as e:
                        log_event(f"[reconciler] Could not release VM {vm_id}: {e}", logging.ERROR)
            else:
                log_event(f"[reconciler] VM {vm_id} still in progress at the sweep timeout", logging.WARNING)

        executor.shutdown(wait=False)
        return outcomes

    def _finish(self, result: SweepResult) -> SweepResult:
        self.last_results[result.sweep] = result
        record_sweep(result.sweep, result.affected, result.failed, result.error)
        if result.error is None:
            log_event(
                f"[reconciler] {result.sweep} sweep done: candidates={result.candidates} "
                f"affected={result.affected} failed={result.failed}"
            )
        return result


class PeriodicTask(threading.Thread):
    """Runs ``target`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, target: Callable[[], SweepResult]) -> None:
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.target = target
        self._stopped = threading.Event()

    def run(self) -> None:
        log_event(f"[reconciler] {self.name} scheduled every {self.interval}s")
        while not self._stopped.wait(self.interval):
            try:
                self.target()
            except Exception as e:  # noqa: BLE001
                log_event(f"[reconciler] {self.name} crashed: {e!r}", logging.ERROR)

    def stop(self) -> None:
        self._stopped.set()


class ReconciliationLoop:
    def __init__(
        self,
        reconciler: Reconciler,
        expiry_interval: float = EXPIRY_SWEEP_INTERVAL_SECONDS,
        drift_interval: float = DRIFT_SYNC_INTERVAL_SECONDS,
    ) -> None:
        self.reconciler = reconciler
        self.tasks = [
            PeriodicTask("expiry-sweep", expiry_interval, reconciler.run_expiry_sweep),
            PeriodicTask("drift-sync", drift_interval, reconciler.run_drift_sync),
        ]

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        for task in self.tasks:
            task.stop()
        for task in self.tasks:
            if task.is_alive():
                task.join(timeout=timeout)
