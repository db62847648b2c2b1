# pharmatrace/api/v1/participants.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pharmatrace.core.deps import parse_uuid
from pharmatrace.core.errors import TraceError, to_http_exception
from pharmatrace.db.session import get_db
from pharmatrace.models.enums import ParticipantRole
from pharmatrace.models.participant import Participant
from pharmatrace.schemas.participants import (
    ParticipantCreate,
    ParticipantListResponse,
    ParticipantResponse,
    ParticipantUpdate,
)
from pharmatrace.services.participant_service import ParticipantService

router = APIRouter(prefix="/participants")


def _iso(dt):
    return dt.isoformat() if dt else None


def _to_resp(p: Participant) -> dict:
    return {
        "id": str(p.id),
        "name": p.name,
        "role": p.role,
        "address": p.address,
        "vkh": p.vkh,
        "isActive": bool(p.is_active),
        "createdAtIso": _iso(p.created_at),
    }


@router.get("", response_model=ParticipantListResponse)
def list_participants(
    role: Optional[ParticipantRole] = Query(default=None),
    activeOnly: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    rows = ParticipantService().list_participants(db, role=role, active_only=activeOnly)
    return {"participants": [_to_resp(p) for p in rows]}


@router.post("", response_model=ParticipantResponse, status_code=201)
def create_participant(req: ParticipantCreate, db: Session = Depends(get_db)):
    try:
        p = ParticipantService().create(
            db,
            name=req.name,
            role=req.role,
            address=req.address,
            vkh=req.vkh,
        )
    except TraceError as e:
        raise to_http_exception(e)
    return _to_resp(p)


@router.get("/{participantId}", response_model=ParticipantResponse)
def get_participant(participantId: str, db: Session = Depends(get_db)):
    try:
        p = ParticipantService().get(db, parse_uuid(participantId, "participantId"))
    except TraceError as e:
        raise to_http_exception(e)
    return _to_resp(p)


@router.patch("/{participantId}", response_model=ParticipantResponse)
def update_participant(participantId: str, req: ParticipantUpdate, db: Session = Depends(get_db)):
    try:
        p = ParticipantService().update(
            db,
            parse_uuid(participantId, "participantId"),
            name=req.name,
            role=req.role,
            address=req.address,
            vkh=req.vkh,
            is_active=req.isActive,
        )
    except TraceError as e:
        raise to_http_exception(e)
    return _to_resp(p)
