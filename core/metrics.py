import threading
import time
from typing import Optional

import psutil
from prometheus_client import Counter, Gauge, Histogram

from config.settings import (
    METRICS_REFRESH_INTERVAL,
    PROVIDER_TYPE,
)
from core.logger import log_event

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vm_orchestrator_requests_total",
    "Total HTTP requests to vm-orchestrator",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vm_orchestrator_request_latency_seconds",
    "Latency of HTTP requests to vm-orchestrator",
    ["endpoint"],
)


# -----------------------------
# VM / tenant metrics
# -----------------------------
VM_CREATED_TOTAL = Counter(
    "vm_created_total",
    "Total number of VMs created",
    ["tenant"],
)

VM_PER_TENANT = Gauge(
    "vm_per_tenant",
    "Number of VM records currently existing per tenant",
    ["tenant"],
)

VM_TRANSITIONS_TOTAL = Counter(
    "vm_transitions_total",
    "Lifecycle operations by outcome",
    ["operation", "outcome"],
)

SSH_SESSIONS_ACTIVE = Gauge(
    "vm_ssh_sessions_active",
    "Number of active SSH WebSocket sessions",
    ["tenant", "vm_id"],
)

# -----------------------------
# Billing metrics
# -----------------------------
BILLING_SESSIONS_OPEN = Gauge(
    "vm_billing_sessions_open",
    "Billing sessions opened by this process and not yet closed by it",
    ["tier"],
)

BILLED_CENTS_TOTAL = Counter(
    "vm_billed_cents_total",
    "Cost accrued by closed billing sessions, in cents",
    ["tier"],
)

# -----------------------------
# Reconciliation metrics
# -----------------------------
SWEEP_RUNS_TOTAL = Counter(
    "vm_reconciler_runs_total",
    "Reconciliation sweep runs",
    ["sweep", "outcome"],
)

SWEEP_AFFECTED_TOTAL = Counter(
    "vm_reconciler_affected_total",
    "VMs changed by reconciliation sweeps",
    ["sweep"],
)

SWEEP_FAILURES_TOTAL = Counter(
    "vm_reconciler_item_failures_total",
    "Per-VM failures inside reconciliation sweeps",
    ["sweep"],
)

SWEEP_LAST_RUN = Gauge(
    "vm_reconciler_last_run_timestamp",
    "UNIX timestamp of the last completed sweep",
    ["sweep"],
)

# -----------------------------
# Host / capacity metrics
# -----------------------------
HOST_CPU_USAGE = Gauge(
    "vm_orchestrator_host_cpu_usage_percent",
    "Host CPU usage in percent",
)

HOST_MEMORY_USAGE = Gauge(
    "vm_orchestrator_host_memory_usage_percent",
    "Host memory usage in percent",
)

HOST_DISK_USAGE = Gauge(
    "vm_orchestrator_host_disk_usage_percent",
    "Host disk usage (root filesystem) in percent",
)

PROVIDER_INFO = Gauge(
    "vm_orchestrator_provider_type",
    "Label gauge exposing configured provider type (for Grafana filters)",
    ["type"],
)


def init_static_metrics() -> None:
    for provider in ["orka", "libvirt"]:
        value = 1.0 if provider == PROVIDER_TYPE else 0.0
        PROVIDER_INFO.labels(type=provider).set(value)


def record_vm_created(tenant: Optional[str]) -> None:
    label = tenant or "anonymous"
    VM_CREATED_TOTAL.labels(tenant=label).inc()
    VM_PER_TENANT.labels(tenant=label).inc()


def record_vm_deleted(tenant: Optional[str]) -> None:
    VM_PER_TENANT.labels(tenant=tenant or "anonymous").dec()


def record_transition(operation: str, outcome: str) -> None:
    VM_TRANSITIONS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def record_session_opened(tier: str) -> None:
    BILLING_SESSIONS_OPEN.labels(tier=tier).inc()


def record_session_closed(tier: str, cost_cents: int) -> None:
    BILLING_SESSIONS_OPEN.labels(tier=tier).dec()
    BILLED_CENTS_TOTAL.labels(tier=tier).inc(max(cost_cents, 0))


def record_sweep(sweep: str, affected: int, failed: int, error: Optional[str]) -> None:
    outcome = "error" if error else ("partial" if failed else "ok")
    SWEEP_RUNS_TOTAL.labels(sweep=sweep, outcome=outcome).inc()
    SWEEP_AFFECTED_TOTAL.labels(sweep=sweep).inc(affected)
    SWEEP_FAILURES_TOTAL.labels(sweep=sweep).inc(failed)
    SWEEP_LAST_RUN.labels(sweep=sweep).set(time.time())


def record_ssh_session_change(tenant: Optional[str], vm_id: str, delta: int) -> None:
    label = tenant or "anonymous"
    current = SSH_SESSIONS_ACTIVE.labels(tenant=label, vm_id=vm_id)._value.get()
    SSH_SESSIONS_ACTIVE.labels(tenant=label, vm_id=vm_id).set(max(current + delta, 0))


def start_background_collectors() -> None:
    """
    Collect host-level capacity metrics periodically using psutil.
    This is enough for Grafana dashboards for CPU/memory/disk.
    """

    def loop() -> None:
        log_event("[metrics] Starting background host metrics collector")
        while True:
            try:
                HOST_CPU_USAGE.set(psutil.cpu_percent(interval=1))
                HOST_MEMORY_USAGE.set(psutil.virtual_memory().percent)
                HOST_DISK_USAGE.set(psutil.disk_usage("/").percent)
            except Exception as e:  # noqa: BLE001
                log_event(f"[metrics] Collector error: {e}")
            time.sleep(METRICS_REFRESH_INTERVAL)

    t = threading.Thread(target=loop, daemon=True)
    t.start()
