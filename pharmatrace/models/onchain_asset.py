#pharmatrace/models/onchain_asset.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Integer, ForeignKey, Index, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, utcnow


class OnChainAsset(Base):
    """
    On-chain NFT of a batch; created by the mint action, one per batch.

    Rules:
      - current_utxo_ref ("<txHash>#<index>") must be set before a transfer
        can be built; it is only written on confirmation
      - step grows by exactly 1 per confirmed transfer
    """

    __tablename__ = "onchain_assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False, unique=True
    )

    policy_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_name: Mapped[str] = mapped_column(String(128), nullable=False)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    script_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    step: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    manufacturer_vkh: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    current_holder_vkh: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    current_utxo_ref: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_onchain_assets_holder", "current_holder_vkh"),
    )
