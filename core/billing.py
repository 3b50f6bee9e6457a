"""
Billing sessions: one row per running period of a VM.

Cost is only ever computed when a session closes, from the session's own
``started_at``, so a session left open across a restart is still billed for
its full duration.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.settings import PRICING_CENTS_PER_HOUR
from core.errors import InvariantViolation
from core.logger import log_event
from core.metrics import record_session_closed, record_session_opened
from core.models import BillingSession

CostFunction = Callable[[int], int]


def cost_function(tier: str) -> CostFunction:
    """elapsed seconds -> cents at the tier's hourly rate, truncated."""
    cents_per_hour = PRICING_CENTS_PER_HOUR.get(tier, PRICING_CENTS_PER_HOUR["standard"])

    def _cost(seconds: int) -> int:
        return max(int(seconds), 0) * cents_per_hour // 3600

    return _cost


def elapsed_seconds(started_at: datetime, ended_at: datetime) -> int:
    return max(int((ended_at - started_at).total_seconds()), 0)


class BillingTracker:
    def get_open_session(self, db: Session, vm_id: str) -> Optional[BillingSession]:
        result = db.execute(
            select(BillingSession)
            .where(BillingSession.vm_instance_id == vm_id, BillingSession.ended_at.is_(None))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    def get_session(self, db: Session, session_id: str) -> Optional[BillingSession]:
        result = db.execute(
            select(BillingSession)
            .where(BillingSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def open(self, db: Session, vm_id: str, tenant_id: str, tier: str, now: datetime) -> BillingSession:
        existing = self.get_open_session(db, vm_id)
        if existing is not None:
            raise InvariantViolation(
                f"VM '{vm_id}' already has open billing session '{existing.id}'"
            )
        session = BillingSession(
            vm_instance_id=vm_id,
            tenant_id=tenant_id,
            tier=tier,
            started_at=now,
        )
        db.add(session)
        try:
            db.flush()
        except IntegrityError as e:
            # lost the race against another open for the same VM
            raise InvariantViolation(f"VM '{vm_id}' already has an open billing session") from e
        record_session_opened(tier)
        log_event(f"[billing] Opened session {session.id} for VM {vm_id} (tier={tier})")
        return session

    def close(
        self,
        db: Session,
        session_id: str,
        cost_fn: CostFunction,
        now: datetime,
    ) -> Tuple[Optional[BillingSession], bool]:
        """
        Close a session; returns (session, closed_now).

        Closing an already-closed session changes nothing and returns the
        stored cost, so the stop and forced-expiry paths can never bill the
        same period twice.
        """
        session = self.get_session(db, session_id)
        if session is None:
            return None, False
        if session.ended_at is not None:
            return session, False

        duration = elapsed_seconds(session.started_at, now)
        cost = cost_fn(duration)
        result = db.execute(
            update(BillingSession)
            .where(BillingSession.id == session_id, BillingSession.ended_at.is_(None))
            .values(ended_at=now, duration_seconds=duration, cost_cents=cost)
            .execution_options(synchronize_session=False)
        )
        closed_now = result.rowcount == 1
        session = self.get_session(db, session_id)
        if closed_now:
            record_session_closed(session.tier, cost)
            log_event(
                f"[billing] Closed session {session_id} for VM {session.vm_instance_id}: "
                f"{duration}s, {cost} cents"
            )
        return session, closed_now

    def close_open_for_vm(
        self,
        db: Session,
        vm_id: str,
        now: datetime,
    ) -> Tuple[Optional[BillingSession], bool]:
        session = self.get_open_session(db, vm_id)
        if session is None:
            return None, False
        return self.close(db, session.id, cost_function(session.tier), now)

    def record_charge(self, db: Session, session_id: str, credits_charged: int) -> None:
        db.execute(
            update(BillingSession)
            .where(BillingSession.id == session_id)
            .values(credits_charged=credits_charged)
            .execution_options(synchronize_session=False)
        )

    def list_sessions(self, db: Session, tenant_id: str, vm_id: Optional[str] = None) -> List[BillingSession]:
        stmt = select(BillingSession).where(BillingSession.tenant_id == tenant_id)
        if vm_id is not None:
            stmt = stmt.where(BillingSession.vm_instance_id == vm_id)
        return list(db.execute(stmt.order_by(BillingSession.started_at.desc())).scalars().all())
