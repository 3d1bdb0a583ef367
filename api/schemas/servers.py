"""
Customer server request schemas
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field


class PowerRequest(BaseModel):
    action: Literal['boot', 'reboot', 'shutdown', 'poweroff']


class RenameRequest(BaseModel):
    name: str = Field(..., max_length=255)


class CancellationRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)
    mode: Literal['grace', 'immediate'] = 'grace'
