# pharmatrace/schemas/participants.py
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from pharmatrace.models.enums import ParticipantRole


class ParticipantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    role: ParticipantRole
    address: Optional[str] = None
    vkh: Optional[str] = Field(default=None, description="Wallet verification key hash (hex)")


class ParticipantUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=256)
    role: Optional[ParticipantRole] = None
    address: Optional[str] = None
    vkh: Optional[str] = None
    isActive: Optional[bool] = None


class ParticipantResponse(BaseModel):
    id: str
    name: str
    role: str
    address: Optional[str] = None
    vkh: Optional[str] = None
    isActive: bool
    createdAtIso: Optional[str] = None


class ParticipantListResponse(BaseModel):
    participants: List[ParticipantResponse]
