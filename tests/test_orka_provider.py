import json

import httpx

from core.orka_provider import OrkaProviderClient


def _client(handler, **kwargs):
    options = {"endpoint": "https://orka.test", "token": "static-token", "username": "", "password": ""}
    options.update(kwargs)
    return OrkaProviderClient(transport=httpx.MockTransport(handler), **options)


def test_create_sends_shape_and_returns_identifier():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"vm_id": "orka-123", "ip": "10.1.2.3", "ssh_port": 8822})

    result = _client(handler).create_vm("cc-abc-def", 4, 14, "ventura-base")

    assert result.ok
    assert result.provider_id == "orka-123"
    assert result.ip_address == "10.1.2.3"
    assert result.ssh_port == 8822
    assert seen["path"] == "/api/v2/vm/create"
    assert seen["auth"] == "Bearer static-token"
    assert seen["body"] == {
        "vm_name": "cc-abc-def",
        "orka_image_name": "ventura-base",
        "vcpu": 4,
        "vcpu_count": 1,
        "memory": 14,
    }


def test_non_2xx_is_a_failure_with_status():
    def handler(request):
        return httpx.Response(404, json={"message": "VM not found"})

    result = _client(handler).get_vm_status("cc-missing")

    assert not result.ok
    assert result.reachable
    assert result.not_found
    assert result.error == "VM not found"


def test_transport_error_is_an_unreachable_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = _client(handler).stop_vm("cc-any")

    assert not result.ok
    assert not result.reachable
    assert "connection refused" in result.error


def test_status_is_normalised():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/api/v2/vm/cc-x/status"
        return httpx.Response(200, json={"status": "Running"})

    assert _client(handler).get_vm_status("cc-x").vm_status == "running"


def test_password_login_is_cached():
    token_calls = []

    def handler(request):
        if request.url.path == "/api/v2/token":
            token_calls.append(json.loads(request.content))
            return httpx.Response(200, json={"token": "session-abc"})
        assert request.headers["Authorization"] == "Bearer session-abc"
        return httpx.Response(200, json={})

    client = _client(handler, token="", username="ops@example.com", password="hunter2")
    assert client.start_vm("cc-a").ok
    assert client.delete_vm("cc-a").ok

    assert token_calls == [{"email": "ops@example.com", "password": "hunter2"}]


def test_failed_login_short_circuits_the_call():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(401, json={"error": "bad credentials"})

    client = _client(handler, token="", username="ops@example.com", password="wrong")
    result = client.start_vm("cc-a")

    assert not result.ok
    assert result.status_code == 401
    assert "bad credentials" in result.error
    assert paths == ["/api/v2/token"]
