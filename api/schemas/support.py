"""
Support ticket request schemas
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field

TicketCategory = Literal['billing', 'server', 'network', 'panel', 'abuse', 'general']
TicketPriority = Literal['low', 'normal', 'high', 'urgent']


class CreateTicketRequest(BaseModel):
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=10, max_length=10000)
    category: TicketCategory = 'general'
    priority: TicketPriority = 'normal'
    virtfusionServerId: Optional[int] = None


class TicketMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=10000)
