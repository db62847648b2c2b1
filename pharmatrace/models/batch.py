#pharmatrace/models/batch.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import String, DateTime, ForeignKey, Index, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, JsonDocument, utcnow
from pharmatrace.models.enums import BatchStatus


class Batch(Base):
    """
    A physical product lot.

    Append-only: never deleted. `status` only moves along the lifecycle graph
    (see services/batch_state_machine.py).

    Two-phase status:
      - status           declared value, may be set optimistically before the
                         chain has settled (what the UI shows)
      - confirmed_status last status backed by a confirmed proof event
    """

    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    batch_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    product: Mapped[str] = mapped_column(String(256), nullable=False)

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=BatchStatus.DRAFT.value,
        server_default=text("'DRAFT'"),
    )
    confirmed_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    manufacturer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("participants.id", ondelete="SET NULL"), nullable=True
    )
    current_holder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("participants.id", ondelete="SET NULL"), nullable=True
    )

    # Free-form origin data (product, dosage form, dates, quantity, ...)
    origin_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonDocument, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_batches_status", "status"),
        Index("ix_batches_current_holder", "current_holder_id"),
    )
