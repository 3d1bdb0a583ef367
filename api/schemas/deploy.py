"""
Deploy request schemas
"""
from typing import Optional

from pydantic import BaseModel, Field


class DeployRequest(BaseModel):
    planId: int
    osId: Optional[int] = None
    hostname: Optional[str] = Field(None, max_length=255)
    locationCode: str = Field("BNE", min_length=2, max_length=8)
