# pharmatrace/services/verification_service.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmatrace.core.errors import ChainAdapterError, NotFoundError
from pharmatrace.models.batch import Batch
from pharmatrace.models.document_anchor import DocumentAnchor
from pharmatrace.models.enums import SubmissionStatus
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.participant import Participant
from pharmatrace.models.proof_event import ProofEvent
from pharmatrace.services.chain_adapter import ChainAdapter

logger = logging.getLogger(__name__)


def _iso(dt):
    return dt.isoformat() if dt else None


class VerificationService:
    """
    Public, read-only chain-of-custody report for one batch.

    Confirmed events are re-checked against the chain on every call; nothing
    here writes to the database.
    """

    def __init__(self, adapter: ChainAdapter):
        self.adapter = adapter

    def _resolve(self, db: Session, key: str) -> OnChainAsset:
        asset = db.execute(
            select(OnChainAsset).where(OnChainAsset.fingerprint == key)
        ).scalar_one_or_none()
        if asset:
            return asset

        batch: Optional[Batch] = None
        try:
            batch = db.get(Batch, uuid.UUID(key))
        except ValueError:
            batch = None
        if batch is None:
            batch = db.execute(
                select(Batch).where(Batch.batch_number == key)
            ).scalar_one_or_none()

        if batch is not None:
            asset = db.execute(
                select(OnChainAsset).where(OnChainAsset.batch_id == batch.id)
            ).scalar_one_or_none()
        if not asset:
            raise NotFoundError(f"No on-chain asset found for {key}.")
        return asset

    def _on_chain_status(self, evt: ProofEvent) -> str:
        if evt.status == SubmissionStatus.CONFIRMED.value and evt.onchain_tx_hash:
            try:
                tx = self.adapter.get_tx_status(evt.onchain_tx_hash)
            except ChainAdapterError as e:
                logger.warning(
                    "on-chain lookup failed during verification",
                    extra={"event_id": str(evt.id), "tx_hash": evt.onchain_tx_hash, "error": e.message},
                )
                return "check_failed"
            return "verified" if tx.status == "confirmed" else "not_found"
        if evt.status == SubmissionStatus.SUBMITTED.value:
            return "pending"
        if evt.status == SubmissionStatus.FAILED.value:
            return "failed"
        return "awaiting_signature"

    def verify_batch(self, db: Session, batch_id_or_fingerprint: str) -> Dict[str, Any]:
        key = (batch_id_or_fingerprint or "").strip()
        if not key:
            raise NotFoundError("A batch id, batch number or fingerprint is required.")

        asset = self._resolve(db, key)
        batch = db.get(Batch, asset.batch_id)

        events = db.execute(
            select(ProofEvent)
            .where(ProofEvent.batch_id == asset.batch_id)
            .order_by(ProofEvent.created_at.asc(), ProofEvent.seq.asc())
        ).scalars().all()

        steps: List[Dict[str, Any]] = []
        for idx, evt in enumerate(events):
            steps.append({
                "step": idx,
                "eventType": evt.event_type,
                "holder": evt.signer_vkh,
                "recipient": evt.recipient_vkh,
                "payloadDigest": evt.payload_digest,
                "txHash": evt.onchain_tx_hash,
                "status": evt.status,
                "onChainStatus": self._on_chain_status(evt),
                "createdAtIso": _iso(evt.created_at),
            })

        anchors = db.execute(
            select(DocumentAnchor)
            .where(DocumentAnchor.batch_id == asset.batch_id)
            .order_by(DocumentAnchor.created_at.asc())
        ).scalars().all()

        holder = db.get(Participant, batch.current_holder_id) if batch.current_holder_id else None

        all_confirmed = all(e.status == SubmissionStatus.CONFIRMED.value for e in events)
        any_failed = any(e.status == SubmissionStatus.FAILED.value for e in events)

        return {
            "batchId": str(batch.id),
            "batchNumber": batch.batch_number,
            "product": batch.product,
            "status": batch.status,
            "confirmedStatus": batch.confirmed_status,
            "fingerprint": asset.fingerprint,
            "policyId": asset.policy_id,
            "currentHolderVkh": asset.current_holder_vkh,
            "currentHolderName": holder.name if holder else None,
            "step": asset.step,
            "isValid": all_confirmed and not any_failed,
            "onChainMatch": all(s["onChainStatus"] == "verified" for s in steps),
            "steps": steps,
            "documentAnchors": [
                {
                    "documentHash": a.document_hash,
                    "documentType": a.document_type,
                    "visibility": a.visibility,
                    "txHash": a.onchain_tx_hash,
                    "status": a.status,
                }
                for a in anchors
            ],
        }
