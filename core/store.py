"""
State store operations.

The store is the only arbiter of concurrent writes. Every status change is a
compare-and-set UPDATE (status precondition in the WHERE clause), credit
deduction is a conditional UPDATE, and metadata writes are guarded by
``metadata_version`` so two processes can never both win the same race.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import TRIAL_CREDITS, TRIAL_DURATION_DAYS
from core.database import make_session_factory
from core.models import (
    ACTIVE_STATUSES,
    BillingSession,
    Tenant,
    VMInstance,
    VMMetadata,
    VMStatus,
    utcnow,
)


class StoreConflict(Exception):
    """A metadata compare-and-set kept losing to concurrent writers."""


class MetadataUpdate(NamedTuple):
    vm: Optional[VMInstance]
    applied: bool
    outcome: Any = None


class StateStore:
    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.session_factory = session_factory or make_session_factory(engine)
        self.clock = clock

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self.session_factory() as db:
            with db.begin():
                yield db

    def ping(self) -> None:
        with self.session_factory() as db:
            db.execute(select(1))

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------
    def create_tenant(
        self,
        owner_ref: str,
        name: str,
        tier: str = "standard",
        credits: int = TRIAL_CREDITS,
        trial_days: int = TRIAL_DURATION_DAYS,
    ) -> Tenant:
        now = self.clock()
        tenant = Tenant(
            owner_ref=owner_ref,
            name=name,
            tier=tier,
            credit_balance=credits,
            trial_ends_at=now + timedelta(days=trial_days) if trial_days > 0 else None,
            created_at=now,
            updated_at=now,
        )
        with self.transaction() as db:
            db.add(tenant)
        return tenant

    def get_tenant(self, tenant_id: str, db: Optional[Session] = None) -> Optional[Tenant]:
        stmt = select(Tenant).where(Tenant.id == tenant_id).execution_options(populate_existing=True)
        if db is not None:
            return db.execute(stmt).scalar_one_or_none()
        with self.session_factory() as own:
            return own.execute(stmt).scalar_one_or_none()

    def list_tenants(self, owner_ref: str) -> List[Tenant]:
        with self.session_factory() as db:
            result = db.execute(
                select(Tenant).where(Tenant.owner_ref == owner_ref).order_by(Tenant.created_at)
            )
            return list(result.scalars().all())

    def set_tier(self, tenant_id: str, tier: str) -> Optional[Tenant]:
        with self.transaction() as db:
            result = db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(tier=tier, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return self.get_tenant(tenant_id, db=db)

    def add_credits(self, tenant_id: str, amount: int) -> Optional[Tenant]:
        with self.transaction() as db:
            result = db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(credit_balance=Tenant.credit_balance + amount, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return self.get_tenant(tenant_id, db=db)

    def deduct_credits(self, db: Session, tenant_id: str, amount: int) -> bool:
        """balance = balance - amount WHERE balance >= amount, in one statement."""
        result = db.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id, Tenant.credit_balance >= amount)
            .values(credit_balance=Tenant.credit_balance - amount, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def drain_credits(self, db: Session, tenant_id: str, expected_balance: int) -> bool:
        """Zero the balance only if it still equals what the caller saw."""
        result = db.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id, Tenant.credit_balance == expected_balance)
            .values(credit_balance=0, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def lock_tenant(self, db: Session, tenant_id: str) -> Optional[Tenant]:
        """
        Take the tenant row's write lock for the rest of the transaction.

        Quota checks count rows and then insert/claim; holding the tenant lock
        serializes those check-then-act sequences per tenant on every backend
        (row lock on PostgreSQL, database write lock on SQLite).
        """
        result = db.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .values(updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        stmt = (
            select(Tenant)
            .where(Tenant.id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return db.execute(stmt).scalar_one()

    def delete_tenant(self, tenant_id: str) -> Optional[bool]:
        """
        Remove a tenant and, through the foreign-key cascade, its billing
        history.

        Returns None when the tenant does not exist and False while it still
        owns any VM record, whatever its status: a stopped or failed VM can
        still exist at the provider and has to go through ``delete_vm``.
        """
        with self.transaction() as db:
            if self.lock_tenant(db, tenant_id) is None:
                return None
            if self.count_vms(db, tenant_id) > 0:
                return False
            result = db.execute(delete(Tenant).where(Tenant.id == tenant_id))
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # VM instances
    # ------------------------------------------------------------------
    def count_vms(self, db: Session, tenant_id: str, statuses: Optional[Iterable[str]] = None) -> int:
        stmt = select(func.count(VMInstance.id)).where(VMInstance.tenant_id == tenant_id)
        if statuses is not None:
            stmt = stmt.where(VMInstance.status.in_(list(statuses)))
        return int(db.execute(stmt).scalar() or 0)

    def count_active_vms(self, db: Session, tenant_id: str, exclude_vm_id: Optional[str] = None) -> int:
        stmt = select(func.count(VMInstance.id)).where(
            VMInstance.tenant_id == tenant_id,
            VMInstance.status.in_(ACTIVE_STATUSES),
        )
        if exclude_vm_id is not None:
            stmt = stmt.where(VMInstance.id != exclude_vm_id)
        return int(db.execute(stmt).scalar() or 0)

    def insert_vm(self, db: Session, **fields: Any) -> VMInstance:
        now = self.clock()
        fields.setdefault("created_at", now)
        fields.setdefault("status_changed_at", now)
        fields.setdefault("meta", {})
        vm = VMInstance(**fields)
        db.add(vm)
        db.flush()
        return vm

    def get_vm(
        self,
        vm_id: str,
        tenant_id: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Optional[VMInstance]:
        stmt = select(VMInstance).where(VMInstance.id == vm_id)
        if tenant_id is not None:
            stmt = stmt.where(VMInstance.tenant_id == tenant_id)
        stmt = stmt.execution_options(populate_existing=True)
        if db is not None:
            return db.execute(stmt).scalar_one_or_none()
        with self.session_factory() as own:
            return own.execute(stmt).scalar_one_or_none()

    def list_vms(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
    ) -> Tuple[List[VMInstance], int]:
        page = max(page, 1)
        limit = max(limit, 1)
        with self.session_factory() as db:
            filters = [VMInstance.tenant_id == tenant_id]
            if status:
                filters.append(VMInstance.status == status)
            total = int(db.execute(select(func.count(VMInstance.id)).where(*filters)).scalar() or 0)
            result = db.execute(
                select(VMInstance)
                .where(*filters)
                .order_by(VMInstance.created_at.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            return list(result.scalars().all()), total

    def compare_and_set(
        self,
        db: Session,
        vm_id: str,
        values: Dict[str, Any],
        statuses: Optional[Iterable[str]] = None,
        version: Optional[int] = None,
        changed_at: Optional[datetime] = None,
        expires_before: Optional[datetime] = None,
        status_version: Optional[int] = None,
    ) -> bool:
        """
        Single-statement conditional UPDATE of one VM row.

        Returns False when any precondition no longer holds, in which case
        nothing was written and the caller lost the race.
        """
        stmt = update(VMInstance).where(VMInstance.id == vm_id)
        if statuses is not None:
            stmt = stmt.where(VMInstance.status.in_(list(statuses)))
        if version is not None:
            stmt = stmt.where(VMInstance.metadata_version == version)
        if changed_at is not None:
            stmt = stmt.where(VMInstance.status_changed_at == changed_at)
        if expires_before is not None:
            stmt = stmt.where(VMInstance.expires_at <= expires_before)
        if status_version is not None:
            stmt = stmt.where(VMInstance.status_version == status_version)

        values = dict(values)
        if "status" in values:
            values.setdefault("status_changed_at", self.clock())
            values["status_version"] = VMInstance.status_version + 1
        if "meta" in values:
            values["metadata_version"] = VMInstance.metadata_version + 1
        resolved = {getattr(VMInstance, key): value for key, value in values.items()}

        result = db.execute(stmt.values(resolved).execution_options(synchronize_session=False))
        return result.rowcount == 1

    def mutate_metadata(
        self,
        vm_id: str,
        mutate: Callable[[VMMetadata], Any],
        statuses: Optional[Iterable[str]] = None,
        tenant_id: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        attempts: int = 5,
    ) -> MetadataUpdate:
        """
        Read-modify-write of the metadata document under optimistic locking.

        ``mutate`` edits the typed record in place and may return a value,
        which is handed back as ``outcome`` once the write has landed.
        """
        statuses = tuple(statuses) if statuses is not None else None
        for _ in range(attempts):
            with self.transaction() as db:
                vm = self.get_vm(vm_id, tenant_id=tenant_id, db=db)
                if vm is None or (statuses is not None and vm.status not in statuses):
                    return MetadataUpdate(vm, False)
                record = vm.metadata_record
                outcome = mutate(record)
                new_values = dict(values or {})
                new_values["meta"] = record.to_document()
                if self.compare_and_set(
                    db,
                    vm_id,
                    new_values,
                    statuses=statuses,
                    version=vm.metadata_version,
                ):
                    return MetadataUpdate(self.get_vm(vm_id, db=db), True, outcome)
        raise StoreConflict(f"metadata of VM '{vm_id}' kept changing underneath {attempts} attempts")

    def delete_vm(self, db: Session, vm_id: str) -> bool:
        result = db.execute(delete(VMInstance).where(VMInstance.id == vm_id))
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Reconciliation support
    # ------------------------------------------------------------------
    def claim_expired(self, now: datetime, stale_before: datetime) -> List[str]:
        """
        Claim every running VM whose ``expires_at`` has been reached.

        Rows are read with an exclusive, skip-locked lock and flipped to
        ``expiring`` by compare-and-set, so concurrent sweeps never claim the
        same VM twice. Claims older than ``stale_before`` (a sweep that died
        before finishing) are claimed again.
        """
        claimed: List[str] = []
        with self.transaction() as db:
            stmt = (
                select(VMInstance.id, VMInstance.status, VMInstance.status_changed_at)
                .where(
                    or_(
                        and_(
                            VMInstance.status == VMStatus.RUNNING.value,
                            VMInstance.expires_at <= now,
                        ),
                        and_(
                            VMInstance.status == VMStatus.EXPIRING.value,
                            VMInstance.status_changed_at < stale_before,
                        ),
                    )
                )
                .order_by(VMInstance.expires_at)
                .with_for_update(skip_locked=True)
            )
            for vm_id, status, changed_at in db.execute(stmt).all():
                if self.compare_and_set(
                    db,
                    vm_id,
                    {"status": VMStatus.EXPIRING.value, "status_changed_at": now},
                    statuses=(status,),
                    changed_at=changed_at,
                ):
                    claimed.append(vm_id)
        return claimed

    def release_claim(self, vm_id: str, claimed_status: str, restore_status: str) -> bool:
        with self.transaction() as db:
            return self.compare_and_set(
                db,
                vm_id,
                {"status": restore_status},
                statuses=(claimed_status,),
            )

    def drift_candidates(self, stale_before: datetime) -> List[VMInstance]:
        """Running VMs, plus starts and creates that have been in flight suspiciously long."""
        with self.session_factory() as db:
            result = db.execute(
                select(VMInstance)
                .where(
                    or_(
                        VMInstance.status == VMStatus.RUNNING.value,
                        and_(
                            VMInstance.status.in_(
                                [VMStatus.STARTING.value, VMStatus.PROVISIONING.value]
                            ),
                            VMInstance.status_changed_at < stale_before,
                        ),
                    )
                )
                .order_by(VMInstance.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------
    def usage_stats(self, tenant_id: str) -> Dict[str, int]:
        with self.session_factory() as db:
            total_vms = self.count_vms(db, tenant_id)
            running_vms = self.count_vms(db, tenant_id, (VMStatus.RUNNING.value,))
            seconds, cost = db.execute(
                select(
                    func.coalesce(func.sum(BillingSession.duration_seconds), 0),
                    func.coalesce(func.sum(BillingSession.cost_cents), 0),
                ).where(BillingSession.tenant_id == tenant_id)
            ).one()
        return {
            "total_vms": total_vms,
            "running_vms": running_vms,
            "total_seconds": int(seconds or 0),
            "total_cost_cents": int(cost or 0),
        }
