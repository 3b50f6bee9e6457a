"""
Outcome types for orchestrator operations.

Precondition rejections and provider failures are ordinary outcomes: they are
returned inside an ``OperationResult`` and the caller branches on ``kind``.
Store failures (``sqlalchemy.exc.SQLAlchemyError``) and ``InvariantViolation``
are not recovered anywhere in core and reach the outermost boundary.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

NOT_FOUND = "not_found"
QUOTA_EXCEEDED = "quota_exceeded"
PAYMENT_REQUIRED = "payment_required"
SHAPE_EXCEEDS_TIER = "shape_exceeds_tier"
INVALID_TRANSITION = "invalid_transition"
PROVIDER_FAILURE = "provider_failure"

# used by the routing layer
HTTP_STATUS_BY_KIND = {
    NOT_FOUND: 404,
    QUOTA_EXCEEDED: 429,
    PAYMENT_REQUIRED: 402,
    SHAPE_EXCEEDS_TIER: 422,
    INVALID_TRANSITION: 409,
    PROVIDER_FAILURE: 502,
}


class InvariantViolation(Exception):
    """Internal logic error, e.g. a second open billing session for one VM."""


class OperationError(BaseModel):
    kind: str
    message: str
    detail: Dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    vm: Optional[Any] = None
    error: Optional[OperationError] = None
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(
        cls,
        vm: Any = None,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> "OperationResult":
        return cls(ok=True, vm=vm, message=message, data=data or {})

    @classmethod
    def failure(
        cls,
        kind: str,
        message: str,
        vm: Any = None,
        **detail: Any,
    ) -> "OperationResult":
        return cls(ok=False, vm=vm, error=OperationError(kind=kind, message=message, detail=detail))

    @classmethod
    def from_error(cls, error: OperationError, vm: Any = None) -> "OperationResult":
        return cls(ok=False, vm=vm, error=error)


def not_found(vm_id: str) -> OperationResult:
    return OperationResult.failure(NOT_FOUND, f"VM '{vm_id}' not found", vm_id=vm_id)


def invalid_transition(vm: Any, operation: str, allowed: tuple) -> OperationResult:
    return OperationResult.failure(
        INVALID_TRANSITION,
        f"Cannot {operation} VM '{vm.id}' from status '{vm.status}'",
        vm=vm,
        current_status=vm.status,
        allowed_statuses=list(allowed),
    )
