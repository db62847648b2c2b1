# pharmatrace/models/participant.py

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Index, Uuid, func, true
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base


class Participant(Base):
    """
    Supply-chain actor (manufacturer, distributor, pharmacy, ...).

    `vkh` is the verification key hash of the participant's wallet; lifecycle
    actions match connected wallets against it.
    """

    __tablename__ = "participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)

    address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vkh: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(nullable=False, default=True, server_default=true())

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_participants_vkh_active", "vkh", "is_active"),
        Index("ix_participants_role", "role"),
    )
