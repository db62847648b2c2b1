# pharmatrace/services/participant_service.py
from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmatrace.core.errors import ConflictError, NotFoundError
from pharmatrace.models.enums import ParticipantRole
from pharmatrace.models.participant import Participant


class ParticipantService:
    def list_participants(
        self,
        db: Session,
        *,
        role: Optional[ParticipantRole] = None,
        active_only: bool = False,
    ) -> List[Participant]:
        q = select(Participant)
        if role is not None:
            q = q.where(Participant.role == role.value)
        if active_only:
            q = q.where(Participant.is_active.is_(True))
        return list(db.execute(q.order_by(Participant.created_at.asc(), Participant.name.asc())).scalars().all())

    def get(self, db: Session, participant_id: uuid.UUID) -> Participant:
        p = db.get(Participant, participant_id)
        if not p:
            raise NotFoundError(f"Participant {participant_id} not found.")
        return p

    def _assert_vkh_free(self, db: Session, vkh: Optional[str], exclude_id: Optional[uuid.UUID] = None) -> None:
        # one active participant per wallet, otherwise holder lookups are ambiguous
        if not vkh:
            return
        q = select(Participant.id).where(Participant.vkh == vkh, Participant.is_active.is_(True))
        if exclude_id is not None:
            q = q.where(Participant.id != exclude_id)
        if db.execute(q.limit(1)).first():
            raise ConflictError(f"An active participant already uses VKH {vkh}.")

    def create(
        self,
        db: Session,
        *,
        name: str,
        role: ParticipantRole,
        address: Optional[str] = None,
        vkh: Optional[str] = None,
    ) -> Participant:
        vkh = vkh.strip().lower() if vkh else None
        self._assert_vkh_free(db, vkh)

        p = Participant(
            id=uuid.uuid4(),
            name=name.strip(),
            role=role.value,
            address=address.strip() if address else None,
            vkh=vkh,
            is_active=True,
        )
        db.add(p)
        db.commit()
        db.refresh(p)
        return p

    def update(
        self,
        db: Session,
        participant_id: uuid.UUID,
        *,
        name: Optional[str] = None,
        role: Optional[ParticipantRole] = None,
        address: Optional[str] = None,
        vkh: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Participant:
        """Partial update; a field left as None keeps its stored value."""
        p = self.get(db, participant_id)

        if vkh is not None:
            vkh = vkh.strip().lower() or None
        if (vkh is not None and vkh != p.vkh) or is_active:
            self._assert_vkh_free(db, vkh if vkh is not None else p.vkh, exclude_id=p.id)

        if name is not None:
            p.name = name.strip()
        if role is not None:
            p.role = role.value
        if address is not None:
            p.address = address.strip() or None
        if vkh is not None:
            p.vkh = vkh
        if is_active is not None:
            p.is_active = is_active

        db.commit()
        db.refresh(p)
        return p
