from typing import Literal

from pydantic import BaseModel, Field


class TenantCreateSchema(BaseModel):
    """
    'owner_ref' identifies the account that owns the tenant. In a real
    integration it comes from the auth layer; here it is explicit.
    """

    owner_ref: str = Field(..., min_length=1, description="Owning account identifier")
    name: str = Field(..., min_length=1, max_length=100)


class TierUpdateSchema(BaseModel):
    tier: Literal["standard", "pro", "enterprise"]


class CreditTopUpSchema(BaseModel):
    amount_cents: int = Field(..., gt=0, description="Credits to add, in cents")
