"""
Billing request schemas
Amounts are integer cents (AUD)
"""
from typing import Optional

from pydantic import BaseModel, Field


class TopupRequest(BaseModel):
    amountCents: int = Field(..., description="Top-up amount in cents (500-50000)")


class DirectTopupRequest(BaseModel):
    amountCents: int = Field(..., description="Top-up amount in cents (500-50000)")
    paymentMethodId: str = Field(..., min_length=1)


class AutoTopupRequest(BaseModel):
    enabled: bool
    thresholdCents: int = Field(500, description="Refill when the balance drops to this amount")
    amountCents: int = Field(2000, description="Amount charged per refill")
    paymentMethodId: Optional[str] = None


class PortalRequest(BaseModel):
    returnPath: Optional[str] = Field("/billing", max_length=200)
