import threading
import time
from typing import Any, Dict, Optional

import httpx

from config.settings import (
    ORKA_API_VERSION,
    ORKA_ENDPOINT,
    ORKA_PASSWORD,
    ORKA_SESSION_TTL_SECONDS,
    ORKA_TOKEN,
    ORKA_USERNAME,
    PROVIDER_TIMEOUT_SECONDS,
)
from core.logger import log_event
from core.provider import ProviderClient, ProviderResult


class OrkaProviderClient(ProviderClient):
    """
    Orka-style REST API client.

    Authentication is either a static bearer token (ORKA_TOKEN) or a
    username/password exchange for a session token that is cached and
    refreshed before it runs out.
    """

    name = "orka"

    def __init__(
        self,
        endpoint: str = ORKA_ENDPOINT,
        token: str = ORKA_TOKEN,
        username: str = ORKA_USERNAME,
        password: str = ORKA_PASSWORD,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.token = token
        self.username = username
        self.password = password
        self._session_token: Optional[str] = None
        self._session_expiry = 0.0
        self._auth_lock = threading.Lock()

        self.client = httpx.Client(
            base_url=f"{self.endpoint}/api/{ORKA_API_VERSION}",
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        log_event(f"[provider] Orka client configured for {self.endpoint}")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _auth_headers(self) -> Dict[str, str]:
        bearer = self.token or self._session_token
        return {"Authorization": f"Bearer {bearer}"} if bearer else {}

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        with_auth: bool = True,
    ) -> ProviderResult:
        headers = self._auth_headers() if with_auth else {}
        try:
            response = self.client.request(
                method,
                path,
                json=body if body is not None and method != "GET" else None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            log_event(f"[provider] {method} {path} failed: {e!r}")
            return ProviderResult.failure(str(e) or e.__class__.__name__)

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error")
            return ProviderResult.failure(
                message or response.reason_phrase or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if data is not None and not isinstance(data, dict):
            data = {"items": data}
        return ProviderResult.success(data or {}, status_code=response.status_code)

    def _authenticate(self) -> ProviderResult:
        if self.token:
            return ProviderResult.success()

        with self._auth_lock:
            if self._session_token and time.monotonic() < self._session_expiry:
                return ProviderResult.success()

            result = self._request(
                "POST",
                "/token",
                {"email": self.username, "password": self.password},
                with_auth=False,
            )
            token = result.data.get("token") if result.ok else None
            if not token:
                log_event(f"[provider] Orka authentication failed: {result.error}")
                return ProviderResult.failure(
                    f"Orka authentication failed: {result.error or 'no token returned'}",
                    status_code=result.status_code,
                )

            self._session_token = token
            self._session_expiry = time.monotonic() + ORKA_SESSION_TTL_SECONDS
            return ProviderResult.success()

    def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> ProviderResult:
        auth = self._authenticate()
        if not auth.ok:
            return auth
        return self._request(method, path, body)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    def create_vm(self, name: str, vcpu: int, memory_gb: int, image: str) -> ProviderResult:
        payload = {
            "vm_name": name,
            "orka_image_name": image,
            "vcpu": vcpu,
            "vcpu_count": 1,
            "memory": memory_gb,
        }
        return self._call("POST", "/vm/create", payload)

    def start_vm(self, name: str) -> ProviderResult:
        return self._call("POST", f"/vm/{name}/start")

    def stop_vm(self, name: str) -> ProviderResult:
        return self._call("POST", f"/vm/{name}/stop")

    def delete_vm(self, name: str) -> ProviderResult:
        return self._call("DELETE", f"/vm/{name}")

    def get_vm_status(self, name: str) -> ProviderResult:
        return self._call("GET", f"/vm/{name}/status")

    def get_health(self) -> ProviderResult:
        return self._call("GET", "/health")

    def close(self) -> None:
        self.client.close()
