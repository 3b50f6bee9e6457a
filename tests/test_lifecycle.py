from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from core.errors import INVALID_TRANSITION, NOT_FOUND, PROVIDER_FAILURE, QUOTA_EXCEEDED
from core.models import VMStatus
from core.provider import ProviderResult


def test_standard_tenant_walkthrough(orchestrator, store, tenant):
    created = orchestrator.create_vm(tenant.id)
    assert created.ok
    assert created.vm.status == VMStatus.PROVISIONING.value

    vm_a = orchestrator.wait_for_provisioning(created.vm.id, timeout=10)
    assert vm_a.status == VMStatus.READY.value
    assert vm_a.provider_vm_id == f"fake-{vm_a.provider_name}"

    second = orchestrator.create_vm(tenant.id)
    assert second.error.kind == QUOTA_EXCEEDED

    started = orchestrator.start_vm(tenant.id, vm_a.id)
    assert started.ok
    assert started.vm.status == VMStatus.RUNNING.value
    with store.transaction() as db:
        assert orchestrator.billing.get_open_session(db, vm_a.id) is not None

    again = orchestrator.start_vm(tenant.id, vm_a.id)
    assert again.error.kind == INVALID_TRANSITION
    assert again.error.detail["current_status"] == VMStatus.RUNNING.value


def test_create_sets_defaults_name_and_expiry(orchestrator, clock, tenant):
    result = orchestrator.create_vm(tenant.id, display_name="build box")
    vm = result.vm

    assert vm.provider_name.startswith(f"cc-{tenant.id[:8]}-")
    assert len(vm.provider_name) == len("cc-") + 8 + 1 + 8
    assert (vm.vcpu, vm.memory_gb, vm.base_image) == (4, 14, "ventura-base")
    assert vm.expires_at == clock.now + timedelta(hours=24)
    assert vm.to_dict()["name"] == "build box"
    orchestrator.wait_for_provisioning(vm.id, timeout=10)


def test_provider_create_failure_marks_vm_failed(orchestrator, provider, tenant, ready_vm):
    provider.fail("create", "no capacity", status_code=503)

    vm = ready_vm(tenant.id)

    assert vm.status == VMStatus.FAILED.value
    assert vm.metadata_record.error == "no capacity"
    assert vm.provider_vm_id is None


def test_duplicate_provider_identifier_is_a_distinct_failure(orchestrator, provider, store, tenant, ready_vm):
    store.set_tier(tenant.id, "pro")
    provider.create_vm = lambda *args: ProviderResult.success({"vm_id": "same-id"}, status_code=201)

    first = ready_vm(tenant.id)
    second = ready_vm(tenant.id)

    assert first.status == VMStatus.READY.value
    assert second.status == VMStatus.FAILED.value
    assert "already recorded" in second.metadata_record.error


def test_unknown_tenant_and_vm(orchestrator, tenant):
    assert orchestrator.create_vm("nope").error.kind == NOT_FOUND
    assert orchestrator.start_vm(tenant.id, "nope").error.kind == NOT_FOUND
    assert orchestrator.stop_vm(tenant.id, "nope").error.kind == NOT_FOUND
    assert orchestrator.delete_vm(tenant.id, "nope").error.kind == NOT_FOUND
    assert orchestrator.extend_vm(tenant.id, "nope").error.kind == NOT_FOUND


def test_vm_is_invisible_to_other_tenants(orchestrator, store, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    other = store.create_tenant("owner-2", "Other")

    assert orchestrator.get_vm(other.id, vm.id) is None
    assert orchestrator.start_vm(other.id, vm.id).error.kind == NOT_FOUND
    assert orchestrator.delete_vm(other.id, vm.id).error.kind == NOT_FOUND


def test_provider_start_failure_leaves_status_unchanged(orchestrator, provider, store, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    provider.fail("start", "timeout", status_code=None)

    result = orchestrator.start_vm(tenant.id, vm.id)

    assert result.error.kind == PROVIDER_FAILURE
    assert result.error.detail["provider_status"] is None
    assert store.get_vm(vm.id).status == VMStatus.READY.value
    with store.transaction() as db:
        assert orchestrator.billing.get_open_session(db, vm.id) is None


def test_provider_stop_failure_keeps_vm_running_and_billing(orchestrator, provider, store, tenant, running_vm):
    vm = running_vm(tenant.id)
    provider.fail("stop")

    result = orchestrator.stop_vm(tenant.id, vm.id)

    assert result.error.kind == PROVIDER_FAILURE
    assert store.get_vm(vm.id).status == VMStatus.RUNNING.value
    with store.transaction() as db:
        assert orchestrator.billing.get_open_session(db, vm.id) is not None


def test_stop_requires_running(orchestrator, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    result = orchestrator.stop_vm(tenant.id, vm.id)
    assert result.error.kind == INVALID_TRANSITION
    assert result.error.detail["allowed_statuses"] == ["running"]


def test_concurrent_stops_only_one_wins(orchestrator, provider, tenant, running_vm):
    vm = running_vm(tenant.id)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: orchestrator.stop_vm(tenant.id, vm.id), range(4)))

    assert sum(1 for r in results if r.ok) == 1
    assert {r.error.kind for r in results if not r.ok} == {INVALID_TRANSITION}
    assert [c for c in provider.calls if c[0] == "stop"] == [("stop", vm.provider_name)]


def test_delete_running_vm_stops_and_removes(orchestrator, provider, store, tenant, running_vm):
    vm = running_vm(tenant.id)

    result = orchestrator.delete_vm(tenant.id, vm.id)

    assert result.ok
    assert store.get_vm(vm.id) is None
    assert ("stop", vm.provider_name) in provider.calls
    assert ("delete", vm.provider_name) in provider.calls
    assert vm.provider_name not in provider.vms


def test_delete_proceeds_when_provider_fails(orchestrator, provider, store, tenant, running_vm):
    vm = running_vm(tenant.id)
    provider.fail("stop")
    provider.fail("delete")

    assert orchestrator.delete_vm(tenant.id, vm.id).ok
    assert store.get_vm(vm.id) is None
    with store.transaction() as db:
        (session,) = orchestrator.billing.list_sessions(db, tenant.id)
    assert session.ended_at is not None


def test_delete_refused_while_provisioning(orchestrator, provider, store, tenant):
    provider.fail("create")
    vm = orchestrator.create_vm(tenant.id).vm
    orchestrator.wait_for_provisioning(vm.id, timeout=10)
    # simulate a create still in flight
    with store.transaction() as db:
        store.compare_and_set(db, vm.id, {"status": VMStatus.PROVISIONING.value})

    result = orchestrator.delete_vm(tenant.id, vm.id)

    assert result.error.kind == INVALID_TRANSITION


def test_extend_refreshes_expiry_and_counts(orchestrator, store, clock, tenant, running_vm):
    vm = running_vm(tenant.id)
    clock.advance(hours=20)

    first = orchestrator.extend_vm(tenant.id, vm.id)
    second = orchestrator.extend_vm(tenant.id, vm.id)

    assert first.ok and second.ok
    assert second.vm.expires_at == clock.now + timedelta(hours=24)
    assert second.vm.metadata_record.extensions == 2
    assert second.vm.status == VMStatus.RUNNING.value


def test_extend_rejected_for_terminal_vm(orchestrator, provider, tenant, ready_vm):
    provider.fail("create")
    vm = ready_vm(tenant.id)

    assert orchestrator.extend_vm(tenant.id, vm.id).error.kind == INVALID_TRANSITION


def test_extend_rejected_once_expiry_has_claimed_the_vm(orchestrator, store, clock, tenant, running_vm):
    vm = running_vm(tenant.id)
    clock.advance(hours=24)
    assert store.claim_expired(clock.now, clock.now - timedelta(minutes=15)) == [vm.id]

    result = orchestrator.extend_vm(tenant.id, vm.id)

    assert result.error.kind == INVALID_TRANSITION
    assert result.error.detail["current_status"] == VMStatus.EXPIRING.value
    assert store.get_vm(vm.id).metadata_record.extensions == 0

    assert orchestrator.complete_expiry(vm.id).ok
    assert store.get_vm(vm.id).status == VMStatus.EXPIRED.value


def test_connect_returns_one_time_password(orchestrator, tenant, running_vm):
    vm = running_vm(tenant.id)

    result = orchestrator.connect(tenant.id, vm.id)

    connection = result.data["connection"]
    assert connection["host"] == "10.20.0.5"
    assert connection["port"] == 8822
    assert connection["username"] == "admin"
    assert len(connection["password"]) == 20
    assert "5 minutes" in result.message
    assert orchestrator.credentials.retrieve(vm.id).secret == connection["password"]


def test_connect_requires_running(orchestrator, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    result = orchestrator.connect(tenant.id, vm.id)
    assert result.error.kind == INVALID_TRANSITION


def test_force_expire_requires_deadline(orchestrator, store, clock, tenant, running_vm):
    vm = running_vm(tenant.id)

    early = orchestrator.force_expire(vm.id)
    assert early.error.kind == INVALID_TRANSITION
    assert store.get_vm(vm.id).status == VMStatus.RUNNING.value

    clock.advance(hours=24)
    assert orchestrator.force_expire(vm.id).ok
    assert store.get_vm(vm.id).status == VMStatus.EXPIRED.value


def test_forced_expiry_and_stop_bill_identically(orchestrator, store, clock):
    expiring_tenant = store.create_tenant("o", "exp", tier="pro", credits=10_000)
    stopping_tenant = store.create_tenant("o", "stop", tier="pro", credits=10_000)

    expiring = orchestrator.create_vm(expiring_tenant.id).vm
    stopping = orchestrator.create_vm(stopping_tenant.id).vm
    orchestrator.wait_for_provisioning(expiring.id, timeout=10)
    orchestrator.wait_for_provisioning(stopping.id, timeout=10)
    orchestrator.start_vm(expiring_tenant.id, expiring.id)
    orchestrator.start_vm(stopping_tenant.id, stopping.id)

    clock.advance(hours=24, seconds=17)
    orchestrator.force_expire(expiring.id)
    orchestrator.stop_vm(stopping_tenant.id, stopping.id)

    expected = (24 * 3600 + 17) * 1000 // 3600
    assert orchestrator.usage_stats(expiring_tenant.id)["total_cost_cents"] == expected
    assert orchestrator.usage_stats(stopping_tenant.id)["total_cost_cents"] == expected
