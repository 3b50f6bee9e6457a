from pydantic import BaseModel, Field

from config.settings import DEFAULT_BASE_IMAGE, DEFAULT_MEMORY_GB, DEFAULT_VCPU


class VMCreateSchema(BaseModel):
    """
    Schema for creating a new VM.

    The shape is validated here against absolute bounds only; the tenant's
    tier ceiling is enforced by the quota guard.
    """

    name: str | None = Field(default=None, max_length=100, description="Optional display name")
    vcpu: int = Field(DEFAULT_VCPU, ge=2, le=12, description="Number of virtual CPUs")
    memory_gb: int = Field(DEFAULT_MEMORY_GB, ge=4, le=32, description="RAM in GB")
    base_image: str = Field(DEFAULT_BASE_IMAGE, min_length=1, description="Provider image to boot from")
