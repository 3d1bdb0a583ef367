"""
Admin request schemas
"""
from typing import Optional

from pydantic import BaseModel, Field


class AdminActionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class TransferRequest(BaseModel):
    newOwnerId: int = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=1000)


class WalletAdjustRequest(BaseModel):
    auth0UserId: str = Field(..., min_length=1)
    amountCents: int = Field(..., description="Signed adjustment in cents; negative debits the wallet")
    reason: str = Field(..., min_length=3, max_length=500)


class BlockUserRequest(BaseModel):
    auth0UserId: str = Field(..., min_length=1)
    blocked: bool = True
    reason: Optional[str] = Field(None, max_length=500)
