import os
from pathlib import Path

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root: vm-orchestrator/

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vm-orchestrator.log"

# SSH session recordings (asciinema-like .cast files)
SSH_LOG_DIR = LOG_DIR / "ssh-sessions"
SSH_LOG_DIR.mkdir(parents=True, exist_ok=True)

# -----------------------------
# State store
# -----------------------------
# SQLite is fine for a single node; use PostgreSQL when running more than
# one orchestrator process, e.g.
#   postgresql+psycopg://orchestrator:secret@db:5432/orchestrator
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite:///{BASE_DIR / 'vm-orchestrator.db'}",
)
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# -----------------------------
# Provider
# -----------------------------
# "orka"    -> remote Orka-style HTTP API
# "libvirt" -> local hypervisor via libvirt (QEMU/KVM, Xen, ...)
PROVIDER_TYPE = os.getenv("PROVIDER_TYPE", "orka").lower()
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))

ORKA_ENDPOINT = os.getenv("ORKA_ENDPOINT", "https://orka-api.macstadium.com")
ORKA_API_VERSION = os.getenv("ORKA_API_VERSION", "v2")
ORKA_TOKEN = os.getenv("ORKA_TOKEN", "")
ORKA_USERNAME = os.getenv("ORKA_USERNAME", "")
ORKA_PASSWORD = os.getenv("ORKA_PASSWORD", "")
# Orka session tokens live ~30 minutes, refresh a bit earlier
ORKA_SESSION_TTL_SECONDS = int(os.getenv("ORKA_SESSION_TTL_SECONDS", str(25 * 60)))

# common examples:
#   qemu:///system                  (KVM/QEMU on host)
#   xen:///system                   (Xen)
#   qemu+ssh://root@proxmox/system  (Proxmox)
LIBVIRT_URI = os.getenv("LIBVIRT_URI", "qemu:///system")

# libvirt image storage inside the project
VM_IMAGES_ROOT = Path(os.getenv("VM_IMAGES_ROOT", str(BASE_DIR / "vm-images")))
BASE_IMAGE_DIR = VM_IMAGES_ROOT / "base"
VM_STORAGE_PATH = VM_IMAGES_ROOT / "instances"

# -----------------------------
# VM defaults
# -----------------------------
DEFAULT_VCPU = int(os.getenv("VM_DEFAULT_VCPU", "4"))
DEFAULT_MEMORY_GB = int(os.getenv("VM_DEFAULT_MEMORY_GB", "14"))
DEFAULT_BASE_IMAGE = os.getenv("VM_DEFAULT_BASE_IMAGE", "ventura-base")

# every VM gets now + VM_TTL_HOURS on creation and on each extension
VM_TTL_HOURS = int(os.getenv("VM_TTL_HOURS", "24"))

# -----------------------------
# Tiers / pricing
# -----------------------------
PAID_TIERS = ("pro", "enterprise")

TIER_LIMITS = {
    "standard": {"max_vms": 1, "max_vcpu": 4, "max_memory_gb": 14},
    "pro": {"max_vms": 3, "max_vcpu": 6, "max_memory_gb": 28},
    "enterprise": {"max_vms": 10, "max_vcpu": 12, "max_memory_gb": 56},
}

# smallest currency unit (cents) per VM hour
PRICING_CENTS_PER_HOUR = {
    "standard": int(os.getenv("PRICE_STANDARD_CENTS_PER_HOUR", "500")),
    "pro": int(os.getenv("PRICE_PRO_CENTS_PER_HOUR", "1000")),
    "enterprise": int(os.getenv("PRICE_ENTERPRISE_CENTS_PER_HOUR", "2000")),
}

PRICING_MONTHLY_CENTS = {
    "standard": 2999,
    "pro": 4999,
    "enterprise": 9999,
}

# -----------------------------
# Trial
# -----------------------------
TRIAL_CREDITS = int(os.getenv("TRIAL_CREDITS", "500"))
TRIAL_DURATION_DAYS = int(os.getenv("TRIAL_DURATION_DAYS", "7"))

# -----------------------------
# SSH / ephemeral credentials
# -----------------------------
CREDENTIAL_TTL_SECONDS = int(os.getenv("CREDENTIAL_TTL_SECONDS", "300"))
CREDENTIAL_LENGTH = int(os.getenv("CREDENTIAL_LENGTH", "20"))

VM_SSH_DEFAULT_PORT = int(os.getenv("VM_SSH_DEFAULT_PORT", "22"))
VM_SSH_USERNAME = os.getenv("VM_SSH_USERNAME", "admin")
VM_SSH_PRIVATE_KEY = os.getenv(
    "VM_SSH_PRIVATE_KEY",
    str(Path.home() / ".ssh" / "id_rsa"),
)

# -----------------------------
# Background work
# -----------------------------
RECONCILER_ENABLED = os.getenv("RECONCILER_ENABLED", "true").lower() == "true"
EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "300"))
DRIFT_SYNC_INTERVAL_SECONDS = int(os.getenv("DRIFT_SYNC_INTERVAL_SECONDS", "3600"))
SWEEP_TIMEOUT_SECONDS = float(os.getenv("SWEEP_TIMEOUT_SECONDS", "120"))
SWEEP_MAX_WORKERS = int(os.getenv("SWEEP_MAX_WORKERS", "8"))

# a claim or transitional status older than this is treated as abandoned
# (e.g. the process died between the provider call and the final write)
TRANSITION_STALE_SECONDS = int(os.getenv("TRANSITION_STALE_SECONDS", "900"))

PROVISION_MAX_WORKERS = int(os.getenv("PROVISION_MAX_WORKERS", "4"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_REFRESH_INTERVAL = int(os.getenv("METRICS_REFRESH_INTERVAL", "5"))
