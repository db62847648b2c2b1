from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Index, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, utcnow
from pharmatrace.models.enums import DocumentVisibility, SubmissionStatus


class DocumentAnchor(Base):
    """
    A document hash anchored on-chain through a metadata transaction.
    Shares build_id / signing_request_id with its DOCUMENT_ANCHOR proof event.
    """

    __tablename__ = "document_anchors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False
    )

    document_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    document_type: Mapped[str] = mapped_column(String(64), nullable=False)
    visibility: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=DocumentVisibility.PUBLIC.value,
        server_default=text("'PUBLIC'"),
    )

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

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_document_anchors_batch", "batch_id"),
        Index("ix_document_anchors_signing_request", "signing_request_id", "status"),
        Index("ix_document_anchors_build", "build_id"),
    )
