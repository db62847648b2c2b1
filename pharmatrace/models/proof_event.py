#pharmatrace/models/proof_event.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    ForeignKey,
    Index,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, utcnow
from pharmatrace.models.enums import SubmissionStatus


class ProofEvent(Base):
    """
    One custody-affecting action with on-chain proof intent.

    status: PENDING -> SUBMITTED -> CONFIRMED | FAILED
    Only moves forward; the single exception is an explicit retry, which
    resets FAILED -> PENDING with a fresh build. Never deleted.

    (created_at, seq) orders a batch's events; that order is the custody
    step sequence shown by verification.
    """

    __tablename__ = "proof_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)  # monotonic per batch

    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_digest: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payload_schema: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    signer_vkh: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Transfers only: who the custody goes to
    recipient_participant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("participants.id", ondelete="SET NULL"), nullable=True
    )
    recipient_vkh: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    build_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    signing_request_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    submission_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    onchain_tx_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=SubmissionStatus.PENDING.value,
        server_default=text("'PENDING'"),
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("batch_id", "seq", name="uq_proof_event_batch_seq"),
        Index("ix_proof_events_status", "status"),
        Index("ix_proof_events_signing_request", "signing_request_id", "status"),
        Index("ix_proof_events_build", "build_id"),
    )
