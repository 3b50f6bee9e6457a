from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config.settings import PAID_TIERS, TIER_LIMITS
from core.errors import (
    PAYMENT_REQUIRED,
    QUOTA_EXCEEDED,
    SHAPE_EXCEEDS_TIER,
    OperationError,
)
from core.logger import log_event
from core.models import Tenant, utcnow
from core.store import StateStore


def tier_limits(tier: str) -> dict:
    return TIER_LIMITS.get(tier) or TIER_LIMITS["standard"]


class QuotaGuard:
    """
    Preconditions for cost-incurring operations (create, start).

    The concurrency check must run inside a transaction that holds the
    tenant lock (``StateStore.lock_tenant``) and that also performs the
    insert/claim it guards, otherwise two requests can both pass it.
    """

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def check_credit(self, tenant: Tenant) -> Optional[OperationError]:
        has_credits = (tenant.credit_balance or 0) > 0
        has_subscription = tenant.tier in PAID_TIERS
        trial_active = tenant.trial_ends_at is not None and tenant.trial_ends_at > self.clock()
        if has_credits or has_subscription or trial_active:
            return None
        return OperationError(
            kind=PAYMENT_REQUIRED,
            message="No credits remaining. Please upgrade to continue.",
            detail={
                "tier": tenant.tier,
                "credit_balance": tenant.credit_balance,
                "trial_ends_at": tenant.trial_ends_at,
            },
        )

    def check_concurrency(
        self,
        db: Session,
        tenant: Tenant,
        exclude_vm_id: Optional[str] = None,
    ) -> Optional[OperationError]:
        """
        ``exclude_vm_id`` leaves out the VM being started: a ready VM already
        holds its own slot and a stopped one is about to take one.
        """
        limit = tier_limits(tenant.tier)["max_vms"]
        active = self.store.count_active_vms(db, tenant.id, exclude_vm_id=exclude_vm_id)
        if active < limit:
            return None
        return OperationError(
            kind=QUOTA_EXCEEDED,
            message=f"VM limit reached for {tenant.tier} tier ({limit} concurrent VMs)",
            detail={"tier": tenant.tier, "limit": limit, "active": active},
        )

    def check_shape(self, tenant: Tenant, vcpu: int, memory_gb: int) -> Optional[OperationError]:
        limits = tier_limits(tenant.tier)
        if vcpu <= limits["max_vcpu"] and memory_gb <= limits["max_memory_gb"]:
            return None
        return OperationError(
            kind=SHAPE_EXCEEDS_TIER,
            message=(
                f"{tenant.tier} tier allows at most {limits['max_vcpu']} vCPUs and "
                f"{limits['max_memory_gb']}GB memory"
            ),
            detail={
                "tier": tenant.tier,
                "requested_vcpu": vcpu,
                "requested_memory_gb": memory_gb,
                "max_vcpu": limits["max_vcpu"],
                "max_memory_gb": limits["max_memory_gb"],
            },
        )

    def check_create(self, db: Session, tenant: Tenant, vcpu: int, memory_gb: int) -> Optional[OperationError]:
        error = (
            self.check_shape(tenant, vcpu, memory_gb)
            or self.check_credit(tenant)
            or self.check_concurrency(db, tenant)
        )
        if error:
            log_event(f"[quota] create rejected for tenant {tenant.id}: {error.kind}")
        return error

    def check_start(self, db: Session, tenant: Tenant, vm_id: str) -> Optional[OperationError]:
        error = self.check_credit(tenant) or self.check_concurrency(db, tenant, exclude_vm_id=vm_id)
        if error:
            log_event(f"[quota] start rejected for tenant {tenant.id}: {error.kind}")
        return error

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------
    def deduct_credits(self, tenant_id: str, amount: int, db: Optional[Session] = None) -> bool:
        """
        Atomic conditional deduction. False means nothing was deducted and
        whatever depended on the deduction must not happen.
        """
        if amount <= 0:
            return True
        if db is not None:
            return self.store.deduct_credits(db, tenant_id, amount)
        with self.store.transaction() as own:
            return self.store.deduct_credits(own, tenant_id, amount)

    def settle(self, db: Session, tenant_id: str, amount: int, attempts: int = 5) -> int:
        """
        Charge a closed session against the credit balance.

        Takes the full amount when the balance covers it, otherwise drains
        the balance to zero. Returns what was actually charged.
        """
        if amount <= 0:
            return 0
        for _ in range(attempts):
            if self.store.deduct_credits(db, tenant_id, amount):
                return amount
            tenant = self.store.get_tenant(tenant_id, db=db)
            if tenant is None:
                return 0
            balance = tenant.credit_balance or 0
            if balance >= amount:
                # balance was topped up between the two statements
                continue
            if balance == 0:
                return 0
            if self.store.drain_credits(db, tenant_id, balance):
                log_event(
                    f"[quota] tenant {tenant_id} balance exhausted: charged {balance} of {amount} cents"
                )
                return balance
        log_event(f"[quota] could not settle {amount} cents for tenant {tenant_id} after {attempts} attempts")
        return 0
