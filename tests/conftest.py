import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

import main
from core.database import create_schema, make_engine
from core.lifecycle import VMOrchestrator
from core.provider import ProviderClient, ProviderResult
from core.reconciler import Reconciler
from core.store import StateStore


class Clock:
    """Controllable naive-UTC clock shared by every component under test."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider(ProviderClient):
    """
    In-memory provider with scriptable failures.

    ``fail("stop", ...)`` makes every following stop call fail until
    ``clear()``; ``fail_for`` scopes the failure to one provider name.
    """

    name = "fake"

    def __init__(self) -> None:
        self.vms: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, Optional[str]], ProviderResult] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, error: str = "provider exploded", status_code: Optional[int] = 500) -> None:
        self._failures[(operation, None)] = ProviderResult.failure(error, status_code=status_code)

    def fail_for(
        self,
        operation: str,
        name: str,
        error: str = "provider exploded",
        status_code: Optional[int] = 500,
    ) -> None:
        self._failures[(operation, name)] = ProviderResult.failure(error, status_code=status_code)

    def clear(self) -> None:
        self._failures.clear()

    def _scripted(self, operation: str, name: str) -> Optional[ProviderResult]:
        with self._lock:
            self.calls.append((operation, name))
        return self._failures.get((operation, name)) or self._failures.get((operation, None))

    def create_vm(self, name: str, vcpu: int, memory_gb: int, image: str) -> ProviderResult:
        failure = self._scripted("create", name)
        if failure:
            return failure
        self.vms[name] = "stopped"
        return ProviderResult.success(
            {"vm_id": f"fake-{name}", "ip": "10.20.0.5", "ssh_port": 8822, "status": "stopped"},
            status_code=201,
        )

    def start_vm(self, name: str) -> ProviderResult:
        failure = self._scripted("start", name)
        if failure:
            return failure
        self.vms[name] = "running"
        return ProviderResult.success({"status": "running"})

    def stop_vm(self, name: str) -> ProviderResult:
        failure = self._scripted("stop", name)
        if failure:
            return failure
        self.vms[name] = "stopped"
        return ProviderResult.success({"status": "stopped"})

    def delete_vm(self, name: str) -> ProviderResult:
        failure = self._scripted("delete", name)
        if failure:
            return failure
        self.vms.pop(name, None)
        return ProviderResult.success()

    def get_vm_status(self, name: str) -> ProviderResult:
        failure = self._scripted("status", name)
        if failure:
            return failure
        if name not in self.vms:
            return ProviderResult.failure("VM not found", status_code=404)
        return ProviderResult.success({"status": self.vms[name]})

    def get_health(self) -> ProviderResult:
        failure = self._scripted("health", "")
        return failure or ProviderResult.success({"status": "ok"})


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orchestrator.db'}", echo=False)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, clock):
    return StateStore(engine, clock=clock)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(store, provider, clock):
    orchestrator = VMOrchestrator(store, provider, clock=clock)
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def reconciler(store, orchestrator, provider, clock):
    return Reconciler(store, orchestrator, provider, clock=clock, timeout=10)


@pytest.fixture
def tenant(store):
    return store.create_tenant("owner-1", "Acme Labs")


@pytest.fixture
def ready_vm(orchestrator):
    """Factory: create a VM and wait until provisioning has finished."""

    def _create(tenant_id: str, **shape):
        result = orchestrator.create_vm(tenant_id, **shape)
        assert result.ok, result.error
        return orchestrator.wait_for_provisioning(result.vm.id, timeout=10)

    return _create


@pytest.fixture
def running_vm(orchestrator, ready_vm):
    """Factory: create and start a VM."""

    def _create(tenant_id: str, **shape):
        vm = ready_vm(tenant_id, **shape)
        result = orchestrator.start_vm(tenant_id, vm.id)
        assert result.ok, result.error
        return result.vm

    return _create


@pytest.fixture
def client(monkeypatch, engine, store, provider, orchestrator, reconciler):
    monkeypatch.setattr(main, "RECONCILER_ENABLED", False)
    monkeypatch.setattr(main, "METRICS_ENABLED", False)

    state = main.app.state
    state.engine = engine
    state.store = store
    state.provider = provider
    state.orchestrator = orchestrator
    state.reconciler = reconciler

    with TestClient(main.app) as test_client:
        yield test_client

    state.orchestrator = None
