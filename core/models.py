"""ORM models for tenants, VM instances and billing sessions."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)

from core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every column in the store is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class VMStatus(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    DELETING = "deleting"
    FAILED = "failed"
    UNKNOWN = "unknown"


# Statuses that hold one of the tenant's concurrent-VM slots. Transitional
# claims count as the status they came from or are heading to; "unknown"
# keeps its slot (and its open billing session) until someone resolves it.
ACTIVE_STATUSES = (
    VMStatus.PROVISIONING.value,
    VMStatus.READY.value,
    VMStatus.STARTING.value,
    VMStatus.RUNNING.value,
    VMStatus.STOPPING.value,
    VMStatus.EXPIRING.value,
    VMStatus.UNKNOWN.value,
)

TERMINAL_STATUSES = (VMStatus.FAILED.value, VMStatus.EXPIRED.value)

STARTABLE_STATUSES = (VMStatus.READY.value, VMStatus.STOPPED.value)

DELETABLE_STATUSES = (
    VMStatus.READY.value,
    VMStatus.RUNNING.value,
    VMStatus.STOPPED.value,
    VMStatus.FAILED.value,
    VMStatus.EXPIRED.value,
    VMStatus.UNKNOWN.value,
)

# a VM already on its way down (claimed for stop, expiry or delete) cannot be extended
EXTENDABLE_STATUSES = tuple(
    s.value
    for s in VMStatus
    if s.value not in TERMINAL_STATUSES
    and s not in (VMStatus.STOPPING, VMStatus.EXPIRING, VMStatus.DELETING)
)


class EphemeralCredential(BaseModel):
    secret: str
    expires_at: datetime


class VMMetadata(BaseModel):
    """
    Typed view of the free-form ``metadata`` document on a VM row.

    Every key is optional; rows written by older code may carry none of them.
    """

    credential: Optional[EphemeralCredential] = None
    error: Optional[str] = None
    extensions: int = 0

    @classmethod
    def from_document(cls, document: Optional[dict]) -> "VMMetadata":
        return cls.model_validate(document or {})

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_tenants_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    owner_ref = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    tier = Column(String, nullable=False, default="standard")
    credit_balance = Column(Integer, nullable=False, default=0)
    trial_ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class VMInstance(Base):
    __tablename__ = "vm_instances"

    id = Column(String, primary_key=True, default=_new_id)
    tenant_id = Column(
        String,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    display_name = Column(String, nullable=True)
    provider_name = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=VMStatus.PROVISIONING.value, index=True)
    vcpu = Column(Integer, nullable=False)
    memory_gb = Column(Integer, nullable=False)
    base_image = Column(String, nullable=False)
    ip_address = Column(String, nullable=True)
    ssh_port = Column(Integer, nullable=True)
    provider_vm_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    status_changed_at = Column(DateTime, nullable=False, default=utcnow)
    # bumped by every status write, so a re-entered status never looks unchanged
    status_version = Column(Integer, nullable=False, default=0)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    metadata_version = Column(Integer, nullable=False, default=0)

    @property
    def metadata_record(self) -> VMMetadata:
        return VMMetadata.from_document(self.meta)

    def to_dict(self) -> dict:
        record = self.metadata_record
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.display_name or self.provider_name,
            "provider_name": self.provider_name,
            "status": self.status,
            "vcpu": self.vcpu,
            "memory_gb": self.memory_gb,
            "base_image": self.base_image,
            "ip_address": self.ip_address,
            "ssh_port": self.ssh_port,
            "provider_vm_id": self.provider_vm_id,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "expires_at": self.expires_at,
            "extensions": record.extensions,
            "error": record.error,
        }


class BillingSession(Base):
    __tablename__ = "billing_sessions"
    __table_args__ = (
        # at most one open session per VM
        Index(
            "uq_billing_sessions_open_vm",
            "vm_instance_id",
            unique=True,
            sqlite_where=text("ended_at IS NULL"),
            postgresql_where=text("ended_at IS NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=_new_id)
    tenant_id = Column(
        String,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # usage history outlives the VM record
    vm_instance_id = Column(
        String,
        ForeignKey("vm_instances.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    tier = Column(String, nullable=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    cost_cents = Column(Integer, nullable=False, default=0)
    credits_charged = Column(Integer, nullable=False, default=0)
