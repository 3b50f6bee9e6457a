"""
Provider client contract.

Every call returns a ``ProviderResult``; implementations convert transport
errors, timeouts and non-2xx replies into ``ok=False`` results instead of
raising, so the orchestrator always branches on the tag.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from config.settings import PROVIDER_TYPE


class ProviderResult(BaseModel):
    ok: bool
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    # None when the provider could not be reached at all
    status_code: Optional[int] = None

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None, status_code: int = 200) -> "ProviderResult":
        return cls(ok=True, data=data or {}, status_code=status_code)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None) -> "ProviderResult":
        return cls(ok=False, error=error, status_code=status_code)

    @property
    def reachable(self) -> bool:
        return self.status_code is not None

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def provider_id(self) -> Optional[str]:
        value = self.data.get("vm_id") or self.data.get("id")
        return str(value) if value is not None else None

    @property
    def vm_status(self) -> Optional[str]:
        status = self.data.get("status")
        return str(status).lower() if status is not None else None

    @property
    def ip_address(self) -> Optional[str]:
        return self.data.get("ip") or self.data.get("ip_address")

    @property
    def ssh_port(self) -> Optional[int]:
        port = self.data.get("ssh_port")
        return int(port) if port is not None else None


class ProviderClient(ABC):
    """What the orchestrator needs from a VM host."""

    name = "provider"

    @abstractmethod
    def create_vm(self, name: str, vcpu: int, memory_gb: int, image: str) -> ProviderResult:
        ...

    @abstractmethod
    def start_vm(self, name: str) -> ProviderResult:
        ...

    @abstractmethod
    def stop_vm(self, name: str) -> ProviderResult:
        ...

    @abstractmethod
    def delete_vm(self, name: str) -> ProviderResult:
        ...

    @abstractmethod
    def get_vm_status(self, name: str) -> ProviderResult:
        ...

    def get_health(self) -> ProviderResult:
        return ProviderResult.success({"status": "unknown"})

    def close(self) -> None:
        pass


def build_provider(provider_type: str = PROVIDER_TYPE) -> ProviderClient:
    """Construct the process-wide provider client once at startup."""
    if provider_type == "orka":
        from core.orka_provider import OrkaProviderClient

        return OrkaProviderClient()
    if provider_type == "libvirt":
        from core.libvirt_provider import LibvirtProviderClient

        return LibvirtProviderClient()
    raise ValueError(f"Unsupported PROVIDER_TYPE '{provider_type}' (expected 'orka' or 'libvirt')")
