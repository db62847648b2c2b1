"""batch provenance tables

Revision ID: 0001_batch_provenance
Revises:
Create Date: 2026-10-19 10:12:41.208311

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001_batch_provenance'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(with_updated: bool = True):
    cols = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]
    if with_updated:
        cols.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.text("now()"),
                nullable=False,
            )
        )
    return cols


def upgrade():
    op.create_table(
        "participants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("address", sa.String(length=128), nullable=True),
        sa.Column("vkh", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_participants_vkh_active", "participants", ["vkh", "is_active"])
    op.create_index("ix_participants_role", "participants", ["role"])

    op.create_table(
        "batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=False, unique=True),
        sa.Column("product", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'DRAFT'"), nullable=False),
        sa.Column("confirmed_status", sa.String(length=16), nullable=True),
        sa.Column(
            "manufacturer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("participants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "current_holder_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("participants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("origin_payload", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_batches_status", "batches", ["status"])
    op.create_index("ix_batches_current_holder", "batches", ["current_holder_id"])

    op.create_table(
        "onchain_assets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "batch_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("batches.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        sa.Column("policy_id", sa.String(length=64), nullable=False),
        sa.Column("asset_name", sa.String(length=128), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=True, unique=True),
        sa.Column("script_address", sa.String(length=128), nullable=True),
        sa.Column("step", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("manufacturer_vkh", sa.String(length=64), nullable=True),
        sa.Column("current_holder_vkh", sa.String(length=64), nullable=True),
        sa.Column("current_utxo_ref", sa.String(length=80), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_onchain_assets_holder", "onchain_assets", ["current_holder_vkh"])

    op.create_table(
        "proof_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "batch_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("batches.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("payload_digest", sa.String(length=128), nullable=True),
        sa.Column("payload_schema", sa.String(length=64), nullable=True),
        sa.Column("signer_vkh", sa.String(length=64), nullable=True),
        sa.Column(
            "recipient_participant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("participants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("recipient_vkh", sa.String(length=64), nullable=True),
        sa.Column("build_id", sa.String(length=128), nullable=True),
        sa.Column("signing_request_id", sa.String(length=128), nullable=True),
        sa.Column("submission_id", sa.String(length=128), nullable=True),
        sa.Column("onchain_tx_hash", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'PENDING'"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("batch_id", "seq", name="uq_proof_event_batch_seq"),
    )
    op.create_index("ix_proof_events_status", "proof_events", ["status"])
    op.create_index("ix_proof_events_signing_request", "proof_events", ["signing_request_id", "status"])
    op.create_index("ix_proof_events_build", "proof_events", ["build_id"])

    op.create_table(
        "document_anchors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "batch_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("batches.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("document_hash", sa.String(length=128), nullable=False),
        sa.Column("document_type", sa.String(length=64), nullable=False),
        sa.Column("visibility", sa.String(length=16), server_default=sa.text("'PUBLIC'"), nullable=False),
        sa.Column("build_id", sa.String(length=128), nullable=True),
        sa.Column("signing_request_id", sa.String(length=128), nullable=True),
        sa.Column("submission_id", sa.String(length=128), nullable=True),
        sa.Column("onchain_tx_hash", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'PENDING'"), nullable=False),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_document_anchors_batch", "document_anchors", ["batch_id"])
    op.create_index("ix_document_anchors_signing_request", "document_anchors", ["signing_request_id", "status"])
    op.create_index("ix_document_anchors_build", "document_anchors", ["build_id"])


def downgrade():
    op.drop_table("document_anchors")
    op.drop_table("proof_events")
    op.drop_table("onchain_assets")
    op.drop_table("batches")
    op.drop_table("participants")
