import asyncio
import json
import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import asyncssh
from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from config.settings import (
    DRIFT_SYNC_INTERVAL_SECONDS,
    EXPIRY_SWEEP_INTERVAL_SECONDS,
    METRICS_ENABLED,
    PRICING_CENTS_PER_HOUR,
    PRICING_MONTHLY_CENTS,
    PROVIDER_TYPE,
    RECONCILER_ENABLED,
    SSH_LOG_DIR,
    TIER_LIMITS,
    TRIAL_CREDITS,
    TRIAL_DURATION_DAYS,
    VM_SSH_DEFAULT_PORT,
    VM_SSH_PRIVATE_KEY,
    VM_SSH_USERNAME,
    VM_TTL_HOURS,
)
from core.database import create_schema, make_engine
from core.errors import HTTP_STATUS_BY_KIND, InvariantViolation, OperationResult
from core.lifecycle import VMOrchestrator
from core.logger import log_event
from core.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    init_static_metrics,
    record_ssh_session_change,
    start_background_collectors,
)
from core.models import Tenant, VMStatus
from core.provider import build_provider
from core.reconciler import Reconciler, ReconciliationLoop
from core.store import StateStore
from schemas.tenant_schema import CreditTopUpSchema, TenantCreateSchema, TierUpdateSchema
from schemas.vm_schema import VMCreateSchema


def build_runtime(app: FastAPI, database_url: Optional[str] = None) -> None:
    """Wire the store, provider, orchestrator and reconciler onto ``app.state``."""
    engine = make_engine(database_url)
    create_schema(engine)
    store = StateStore(engine)
    provider = build_provider()
    orchestrator = VMOrchestrator(store, provider)

    app.state.engine = engine
    app.state.store = store
    app.state.provider = provider
    app.state.orchestrator = orchestrator
    app.state.reconciler = Reconciler(store, orchestrator)
    log_event(f"[app] Runtime ready (provider={provider.name}, database={engine.dialect.name})")


@asynccontextmanager
async def lifespan(app: FastAPI):
    owns_runtime = getattr(app.state, "orchestrator", None) is None
    if owns_runtime:
        build_runtime(app)

    loop = None
    if RECONCILER_ENABLED:
        loop = ReconciliationLoop(app.state.reconciler)
        loop.start()
        log_event("[app] Reconciliation loop started")
    app.state.reconciliation_loop = loop

    if METRICS_ENABLED:
        init_static_metrics()
        start_background_collectors()
        log_event("[app] Metrics enabled and collectors started")

    yield

    if loop is not None:
        loop.stop()
        log_event("[app] Reconciliation loop stopped")
    if owns_runtime:
        app.state.orchestrator.shutdown()
        app.state.engine.dispose()
        app.state.orchestrator = None


app = FastAPI(
    title="VM Orchestrator API",
    description=(
        "Provision, track and reclaim ephemeral VMs for multiple tenants.\n\n"
        "Features:\n"
        "- Tier quotas and credit-based billing per running period\n"
        "- Automatic expiry and provider drift reconciliation\n"
        "- Orka HTTP or local libvirt provider backends\n"
        "- Prometheus/Grafana metrics\n"
        "- WebSocket SSH tunnel gated by one-time credentials, with asciinema-style logs"
    ),
    version="1.0.0",
    lifespan=lifespan,
)


def get_store(request: Request) -> StateStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> VMOrchestrator:
    return request.app.state.orchestrator


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


# -----------------------------
# Error mapping
# -----------------------------
@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    log_event(f"[app] Invariant violation on {request.url.path}: {exc}", logging.CRITICAL)
    return JSONResponse(
        status_code=500,
        content={"detail": {"error": "invariant_violation", "message": "Internal consistency error"}},
    )


@app.exception_handler(SQLAlchemyError)
async def store_failure_handler(request: Request, exc: SQLAlchemyError):
    log_event(f"[app] Store failure on {request.url.path}: {exc}", logging.ERROR)
    return JSONResponse(
        status_code=500,
        content={"detail": {"error": "store_failure", "message": "State store unavailable"}},
    )


def _raise_for_result(result: OperationResult) -> None:
    if result.ok:
        return
    error = result.error
    raise HTTPException(
        status_code=HTTP_STATUS_BY_KIND.get(error.kind, 400),
        detail=jsonable_encoder({"error": error.kind, "message": error.message, **error.detail}),
    )


def _tenant_dict(tenant: Tenant) -> dict:
    return {
        "id": tenant.id,
        "owner_ref": tenant.owner_ref,
        "name": tenant.name,
        "tier": tenant.tier,
        "credit_balance": tenant.credit_balance,
        "trial_ends_at": tenant.trial_ends_at,
        "created_at": tenant.created_at,
    }


def _require_tenant(store: StateStore, tenant_id: str) -> Tenant:
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' not found")
    return tenant


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


@app.get("/", tags=["System"])
def root():
    return {
        "message": "VM Orchestrator API is running",
        "version": app.version,
    }


# -----------------------------
# Tenants
# -----------------------------
@app.post("/tenants", status_code=201, tags=["Tenants"])
def create_tenant(payload: TenantCreateSchema, store: StateStore = Depends(get_store)):
    tenant = store.create_tenant(payload.owner_ref, payload.name)
    log_event(f"[app] Tenant {tenant.id} created for owner {payload.owner_ref}")
    return _tenant_dict(tenant)


@app.get("/tenants", tags=["Tenants"])
def list_tenants(owner_ref: str, store: StateStore = Depends(get_store)):
    return {"tenants": [_tenant_dict(t) for t in store.list_tenants(owner_ref)]}


@app.get("/tenants/{tenant_id}", tags=["Tenants"])
def get_tenant(tenant_id: str, store: StateStore = Depends(get_store)):
    tenant = _require_tenant(store, tenant_id)
    return {**_tenant_dict(tenant), "usage": store.usage_stats(tenant_id)}


@app.get("/tenants/{tenant_id}/usage", tags=["Tenants"])
def get_usage(tenant_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    _require_tenant(orchestrator.store, tenant_id)
    return orchestrator.usage_stats(tenant_id)


@app.patch("/tenants/{tenant_id}/tier", tags=["Tenants"])
def update_tier(tenant_id: str, payload: TierUpdateSchema, store: StateStore = Depends(get_store)):
    tenant = store.set_tier(tenant_id, payload.tier)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' not found")
    log_event(f"[app] Tenant {tenant_id} moved to tier {payload.tier}")
    return _tenant_dict(tenant)


@app.post("/tenants/{tenant_id}/credits", tags=["Tenants"])
def add_credits(tenant_id: str, payload: CreditTopUpSchema, store: StateStore = Depends(get_store)):
    tenant = store.add_credits(tenant_id, payload.amount_cents)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' not found")
    log_event(f"[app] Tenant {tenant_id} topped up by {payload.amount_cents} cents")
    return _tenant_dict(tenant)


@app.delete("/tenants/{tenant_id}", tags=["Tenants"])
def delete_tenant(tenant_id: str, store: StateStore = Depends(get_store)):
    deleted = store.delete_tenant(tenant_id)
    if deleted is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' not found")
    if not deleted:
        raise HTTPException(status_code=409, detail="Tenant still owns VMs; delete them first")
    log_event(f"[app] Tenant {tenant_id} deleted")
    return {"status": "deleted", "tenant_id": tenant_id}


@app.get("/pricing", tags=["Tenants"])
def pricing():
    return {
        "tiers": {
            tier: {
                **limits,
                "cents_per_hour": PRICING_CENTS_PER_HOUR[tier],
                "monthly_cents": PRICING_MONTHLY_CENTS[tier],
            }
            for tier, limits in TIER_LIMITS.items()
        },
        "trial": {"credits_cents": TRIAL_CREDITS, "duration_days": TRIAL_DURATION_DAYS},
        "vm_ttl_hours": VM_TTL_HOURS,
    }


# -----------------------------
# VMs
# -----------------------------
@app.get("/tenants/{tenant_id}/vms", tags=["VM Management"])
def list_vms(
    tenant_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    status: Optional[VMStatus] = None,
    orchestrator: VMOrchestrator = Depends(get_orchestrator),
):
    _require_tenant(orchestrator.store, tenant_id)
    vms, total = orchestrator.list_vms(
        tenant_id,
        page=page,
        limit=limit,
        status=status.value if status else None,
    )
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "vms": [vm.to_dict() for vm in vms],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


@app.post("/tenants/{tenant_id}/vms", status_code=201, tags=["VM Management"])
def create_vm(
    tenant_id: str,
    payload: VMCreateSchema,
    orchestrator: VMOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.create_vm(
        tenant_id,
        vcpu=payload.vcpu,
        memory_gb=payload.memory_gb,
        base_image=payload.base_image,
        display_name=payload.name,
    )
    _raise_for_result(result)
    return {"status": result.vm.status, "message": result.message, "vm": result.vm.to_dict()}


@app.get("/tenants/{tenant_id}/vms/{vm_id}", tags=["VM Management"])
def get_vm(tenant_id: str, vm_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    vm = orchestrator.get_vm(tenant_id, vm_id)
    if vm is None:
        raise HTTPException(status_code=404, detail=f"VM '{vm_id}' not found")
    return vm.to_dict()


@app.post("/tenants/{tenant_id}/vms/{vm_id}/start", tags=["VM Management"])
def start_vm(tenant_id: str, vm_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.start_vm(tenant_id, vm_id)
    _raise_for_result(result)
    return {"status": "started", "message": result.message, "vm": result.vm.to_dict()}


@app.post("/tenants/{tenant_id}/vms/{vm_id}/stop", tags=["VM Management"])
def stop_vm(tenant_id: str, vm_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.stop_vm(tenant_id, vm_id)
    _raise_for_result(result)
    return {"status": "stopped", "message": result.message, "vm": result.vm.to_dict()}


@app.delete("/tenants/{tenant_id}/vms/{vm_id}", tags=["VM Management"])
def delete_vm(tenant_id: str, vm_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.delete_vm(tenant_id, vm_id)
    _raise_for_result(result)
    return {"status": "deleted", "vm_id": vm_id}


@app.post("/tenants/{tenant_id}/vms/{vm_id}/extend", tags=["VM Management"])
def extend_vm(tenant_id: str, vm_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.extend_vm(tenant_id, vm_id)
    _raise_for_result(result)
    return {"status": "extended", "message": result.message, "vm": result.vm.to_dict()}


@app.post("/tenants/{tenant_id}/vms/{vm_id}/connect", tags=["VM Management"])
def connect_vm(tenant_id: str, vm_id: str, orchestrator: VMOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.connect(tenant_id, vm_id)
    _raise_for_result(result)
    return {**result.data, "warning": result.message}


# -----------------------------
# Health / jobs
# -----------------------------
@app.get("/health", tags=["System"])
def health():
    return {"status": "ok", "version": app.version}


@app.get("/health/detailed", tags=["System"])
def health_detailed(request: Request):
    checks = {}
    try:
        request.app.state.store.ping()
        checks["database"] = {"status": "ok"}
    except SQLAlchemyError as e:
        checks["database"] = {"status": "error", "error": str(e)}

    provider = request.app.state.orchestrator.provider
    provider_health = provider.get_health()
    checks["provider"] = {
        "type": provider.name,
        "status": "ok" if provider_health.ok else "error",
        "error": provider_health.error,
    }

    healthy = all(check["status"] == "ok" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "checks": checks},
    )


@app.get("/jobs/status", tags=["Jobs"])
def jobs_status(request: Request, reconciler: Reconciler = Depends(get_reconciler)):
    loop = getattr(request.app.state, "reconciliation_loop", None)
    return {
        "enabled": loop is not None,
        "provider": PROVIDER_TYPE,
        "jobs": {
            "expiry": {
                "interval_seconds": EXPIRY_SWEEP_INTERVAL_SECONDS,
                "last_result": reconciler.last_results.get("expiry"),
            },
            "drift": {
                "interval_seconds": DRIFT_SYNC_INTERVAL_SECONDS,
                "last_result": reconciler.last_results.get("drift"),
            },
        },
    }


@app.post("/jobs/cleanup", tags=["Jobs"])
def run_cleanup(reconciler: Reconciler = Depends(get_reconciler)):
    return reconciler.run_expiry_sweep()


@app.post("/jobs/sync", tags=["Jobs"])
def run_sync(reconciler: Reconciler = Depends(get_reconciler)):
    return reconciler.run_drift_sync()


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# -----------------------------
# WebSockets
# -----------------------------
@app.websocket("/ws/tenants/{tenant_id}/vms/{vm_id}/status")
async def vm_status_stream(websocket: WebSocket, tenant_id: str, vm_id: str):
    store: StateStore = websocket.app.state.store
    await websocket.accept()
    log_event(f"[ws-status] Client connected for VM {vm_id}")
    try:
        while True:
            vm = await run_in_threadpool(store.get_vm, vm_id, tenant_id=tenant_id)
            if vm is None:
                await websocket.send_text(json.dumps({"id": vm_id, "status": "deleted"}))
                await websocket.close()
                return
            await websocket.send_text(json.dumps(jsonable_encoder(vm.to_dict())))
            try:
                # client messages are ignored; receiving is how a disconnect surfaces
                await asyncio.wait_for(websocket.receive_text(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
    except WebSocketDisconnect:
        log_event(f"[ws-status] Client disconnected for VM {vm_id}")
    except Exception as e:  # noqa: BLE001
        log_event(f"[ws-status] Error for VM {vm_id}: {e}")
        await websocket.close()


async def _proxy_websocket_to_ssh(
    websocket: WebSocket,
    ssh_process: asyncssh.SSHClientProcess,
    log_file,
):
    async for message in websocket.iter_text():
        timestamp = time.time()
        log_file.write(json.dumps([timestamp, "i", message]) + "\n")
        ssh_process.stdin.write(message)
        await ssh_process.stdin.drain()


async def _proxy_ssh_to_websocket(
    websocket: WebSocket,
    ssh_process: asyncssh.SSHClientProcess,
    log_file,
):
    async for data in ssh_process.stdout:
        timestamp = time.time()
        log_file.write(json.dumps([timestamp, "o", data]) + "\n")
        await websocket.send_text(data)


@app.websocket("/ws/tenants/{tenant_id}/vms/{vm_id}/terminal")
async def vm_terminal(websocket: WebSocket, tenant_id: str, vm_id: str):
    """
    SSH terminal over WebSocket.

    The client must present the one-time password from the connect call as
    the ``token`` query parameter; presenting it consumes it.
    """
    orchestrator: VMOrchestrator = websocket.app.state.orchestrator
    token = websocket.query_params.get("token", "")

    vm = await run_in_threadpool(orchestrator.get_vm, tenant_id, vm_id)
    if vm is None or vm.status != VMStatus.RUNNING.value:
        await websocket.close(code=1008)
        log_event(f"[ws-ssh] Rejected terminal for VM {vm_id}: not running")
        return
    if not await run_in_threadpool(orchestrator.credentials.verify, vm_id, token):
        await websocket.close(code=1008)
        log_event(f"[ws-ssh] Rejected terminal for VM {vm_id}: invalid or expired credential")
        return

    await websocket.accept()
    record_ssh_session_change(tenant_id, vm_id, +1)

    session_id = str(uuid.uuid4())
    log_path = SSH_LOG_DIR / f"{session_id}.cast"
    log_event(f"[ws-ssh] New SSH WebSocket session {session_id} for VM {vm_id}, tenant={tenant_id}")

    key_path = VM_SSH_PRIVATE_KEY if Path(VM_SSH_PRIVATE_KEY).exists() else None
    start_time = time.time()

    with open(log_path, "w", encoding="utf-8") as f:
        header = {
            "version": 2,
            "width": 80,
            "height": 24,
            "timestamp": int(start_time),
            "env": {
                "TERM": "xterm-256color",
                "SHELL": "/bin/bash",
            },
            "vm_id": vm_id,
            "tenant_id": tenant_id,
        }
        f.write(json.dumps(header) + "\n")

        try:
            conn = await asyncssh.connect(
                host=vm.ip_address,
                port=vm.ssh_port or VM_SSH_DEFAULT_PORT,
                username=VM_SSH_USERNAME,
                password=None if key_path else token,
                client_keys=[key_path] if key_path else None,
                known_hosts=None,
            )
            async with conn:
                process = await conn.create_process()

                proxy_in = asyncio.create_task(_proxy_websocket_to_ssh(websocket, process, f))
                proxy_out = asyncio.create_task(_proxy_ssh_to_websocket(websocket, process, f))

                done, pending = await asyncio.wait(
                    [proxy_in, proxy_out],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in pending:
                    task.cancel()

        except asyncssh.Error as e:
            error_msg = f"[ws-ssh] SSH error for VM {vm_id}: {e}"
            log_event(error_msg)
            await websocket.send_text(error_msg)
        except WebSocketDisconnect:
            log_event(f"[ws-ssh] WebSocket disconnect for VM {vm_id}")
        except Exception as e:  # noqa: BLE001
            log_event(f"[ws-ssh] Unexpected error for VM {vm_id}: {e}")
        finally:
            record_ssh_session_change(tenant_id, vm_id, -1)
            try:
                await websocket.close()
            except RuntimeError:
                # already closed by the client
                pass

            log_event(
                f"[ws-ssh] Session {session_id} closed for VM {vm_id}, "
                f"log={log_path}"
            )
