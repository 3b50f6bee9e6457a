import pytest
from fastapi import WebSocketDisconnect


@pytest.fixture
def api_tenant(client):
    response = client.post("/tenants", json={"owner_ref": "owner-9", "name": "API Co"})
    assert response.status_code == 201
    return response.json()


def _create_vm(client, orchestrator, tenant_id, **payload):
    response = client.post(f"/tenants/{tenant_id}/vms", json=payload)
    assert response.status_code == 201, response.text
    vm_id = response.json()["vm"]["id"]
    orchestrator.wait_for_provisioning(vm_id, timeout=10)
    return vm_id


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "VM Orchestrator API is running"
    assert client.get("/health").json()["status"] == "ok"

    detailed = client.get("/health/detailed")
    assert detailed.status_code == 200
    assert detailed.json()["checks"]["provider"]["type"] == "fake"


def test_detailed_health_degrades_with_provider(client, provider):
    provider.fail("health", "orka down")

    response = client.get("/health/detailed")

    assert response.status_code == 503
    assert response.json()["checks"]["provider"]["error"] == "orka down"


def test_tenant_signup_gets_trial(client, api_tenant):
    assert api_tenant["credit_balance"] == 500
    assert api_tenant["tier"] == "standard"
    assert api_tenant["trial_ends_at"] is not None

    listed = client.get("/tenants", params={"owner_ref": "owner-9"}).json()["tenants"]
    assert [t["id"] for t in listed] == [api_tenant["id"]]

    detail = client.get(f"/tenants/{api_tenant['id']}").json()
    assert detail["usage"] == {"total_vms": 0, "running_vms": 0, "total_seconds": 0, "total_cost_cents": 0}


def test_tier_and_credit_updates(client, api_tenant):
    tenant_id = api_tenant["id"]

    assert client.patch(f"/tenants/{tenant_id}/tier", json={"tier": "pro"}).json()["tier"] == "pro"
    assert client.patch(f"/tenants/{tenant_id}/tier", json={"tier": "gold"}).status_code == 422
    assert client.post(f"/tenants/{tenant_id}/credits", json={"amount_cents": 250}).json()["credit_balance"] == 750
    assert client.post("/tenants/nope/credits", json={"amount_cents": 1}).status_code == 404


def test_pricing_lists_every_tier(client):
    tiers = client.get("/pricing").json()["tiers"]
    assert tiers["pro"]["cents_per_hour"] == 1000
    assert tiers["enterprise"]["max_vms"] == 10


def test_vm_lifecycle_over_http(client, orchestrator, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id, name="ci runner")

    vm = client.get(f"/tenants/{tenant_id}/vms/{vm_id}").json()
    assert vm["status"] == "ready"
    assert vm["name"] == "ci runner"

    quota = client.post(f"/tenants/{tenant_id}/vms", json={})
    assert quota.status_code == 429
    assert quota.json()["detail"]["error"] == "quota_exceeded"

    started = client.post(f"/tenants/{tenant_id}/vms/{vm_id}/start")
    assert started.status_code == 200
    assert started.json()["vm"]["status"] == "running"

    again = client.post(f"/tenants/{tenant_id}/vms/{vm_id}/start")
    assert again.status_code == 409
    assert again.json()["detail"]["current_status"] == "running"

    connect = client.post(f"/tenants/{tenant_id}/vms/{vm_id}/connect").json()
    assert connect["connection"]["username"] == "admin"
    assert "expire" in connect["warning"]

    extended = client.post(f"/tenants/{tenant_id}/vms/{vm_id}/extend")
    assert extended.json()["vm"]["extensions"] == 1

    stopped = client.post(f"/tenants/{tenant_id}/vms/{vm_id}/stop")
    assert stopped.json()["vm"]["status"] == "stopped"

    deleted = client.delete(f"/tenants/{tenant_id}/vms/{vm_id}")
    assert deleted.status_code == 200
    assert client.get(f"/tenants/{tenant_id}/vms/{vm_id}").status_code == 404


def test_create_validation_and_tier_ceiling(client, api_tenant):
    tenant_id = api_tenant["id"]

    assert client.post(f"/tenants/{tenant_id}/vms", json={"vcpu": 1}).status_code == 422
    assert client.post(f"/tenants/{tenant_id}/vms", json={"memory_gb": 64}).status_code == 422

    too_big = client.post(f"/tenants/{tenant_id}/vms", json={"vcpu": 8})
    assert too_big.status_code == 422
    assert too_big.json()["detail"]["error"] == "shape_exceeds_tier"


def test_payment_required_maps_to_402(client, store):
    broke = store.create_tenant("owner-3", "Broke", credits=0, trial_days=0)

    response = client.post(f"/tenants/{broke.id}/vms", json={})

    assert response.status_code == 402
    assert response.json()["detail"]["error"] == "payment_required"


def test_provider_failure_maps_to_502(client, orchestrator, provider, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id)
    provider.fail("start", "upstream timeout", status_code=None)

    response = client.post(f"/tenants/{tenant_id}/vms/{vm_id}/start")

    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "provider_failure"


def test_list_vms_paginates(client, orchestrator, store, api_tenant):
    tenant_id = api_tenant["id"]
    store.set_tier(tenant_id, "pro")
    for _ in range(3):
        _create_vm(client, orchestrator, tenant_id)

    first = client.get(f"/tenants/{tenant_id}/vms", params={"limit": 2}).json()
    assert len(first["vms"]) == 2
    assert first["pagination"] == {
        "page": 1,
        "limit": 2,
        "total": 3,
        "total_pages": 2,
        "has_next": True,
        "has_prev": False,
    }

    second = client.get(f"/tenants/{tenant_id}/vms", params={"limit": 2, "page": 2}).json()
    assert len(second["vms"]) == 1
    assert second["pagination"]["has_prev"] is True

    running = client.get(f"/tenants/{tenant_id}/vms", params={"status": "running"}).json()
    assert running["pagination"]["total"] == 0

    assert client.get("/tenants/nope/vms").status_code == 404


def test_jobs_endpoints_run_sweeps(client, orchestrator, clock, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id)
    client.post(f"/tenants/{tenant_id}/vms/{vm_id}/start")
    clock.advance(hours=24)

    cleanup = client.post("/jobs/cleanup").json()
    assert cleanup["sweep"] == "expiry"
    assert cleanup["affected"] == 1
    assert cleanup["error"] is None

    sync = client.post("/jobs/sync").json()
    assert sync == {"sweep": "drift", "affected": 0, "failed": 0, "candidates": 0, "error": None}

    status = client.get("/jobs/status").json()
    assert status["enabled"] is False
    assert status["jobs"]["expiry"]["last_result"]["affected"] == 1


def test_delete_tenant_refused_while_it_owns_vms(client, orchestrator, provider, store, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id)
    client.post(f"/tenants/{tenant_id}/vms/{vm_id}/start")
    client.post(f"/tenants/{tenant_id}/vms/{vm_id}/stop")
    provider_name = store.get_vm(vm_id).provider_name

    refused = client.delete(f"/tenants/{tenant_id}")
    assert refused.status_code == 409
    assert provider.vms == {provider_name: "stopped"}
    assert store.get_vm(vm_id) is not None

    assert client.delete(f"/tenants/{tenant_id}/vms/{vm_id}").status_code == 200
    assert client.delete(f"/tenants/{tenant_id}").status_code == 200

    assert provider.vms == {}
    assert store.get_tenant(tenant_id) is None
    assert client.delete(f"/tenants/{tenant_id}").status_code == 404


def test_status_stream_sends_vm_record(client, orchestrator, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id)

    with client.websocket_connect(f"/ws/tenants/{tenant_id}/vms/{vm_id}/status") as ws:
        assert ws.receive_json()["status"] == "ready"

    with client.websocket_connect(f"/ws/tenants/{tenant_id}/vms/gone/status") as ws:
        assert ws.receive_json() == {"id": "gone", "status": "deleted"}


def test_terminal_rejects_bad_token_and_burns_credential(client, orchestrator, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id)
    client.post(f"/tenants/{tenant_id}/vms/{vm_id}/start")
    client.post(f"/tenants/{tenant_id}/vms/{vm_id}/connect")

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/tenants/{tenant_id}/vms/{vm_id}/terminal?token=guess"):
            pass

    assert exc.value.code == 1008
    assert orchestrator.credentials.retrieve(vm_id) is None


def test_terminal_requires_running_vm(client, orchestrator, api_tenant):
    tenant_id = api_tenant["id"]
    vm_id = _create_vm(client, orchestrator, tenant_id)

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/tenants/{tenant_id}/vms/{vm_id}/terminal?token=x"):
            pass
