# pharmatrace/services/confirmation_service.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from pharmatrace.models.batch import Batch
from pharmatrace.models.document_anchor import DocumentAnchor
from pharmatrace.models.enums import BatchStatus, ProofEventType, SubmissionStatus
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.participant import Participant
from pharmatrace.models.proof_event import ProofEvent
from pharmatrace.services.batch_state_machine import BatchStateMachine
from pharmatrace.services.chain_adapter import ChainAdapter

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Transaction failed on-chain (no reason reported)."


def _now():
    return datetime.now(timezone.utc)


def utxo_ref(tx_hash: str, index: int = 0) -> str:
    return f"{tx_hash}#{index}"


# ─────────────────────────────────────────────
# POST-CONFIRMATION SIDE EFFECTS (one per event type)
# ─────────────────────────────────────────────

def _asset_for(db: Session, batch_id: uuid.UUID) -> Optional[OnChainAsset]:
    return db.execute(
        select(OnChainAsset).where(OnChainAsset.batch_id == batch_id)
    ).scalar_one_or_none()


def _active_participant_by_vkh(db: Session, vkh: Optional[str]) -> Optional[Participant]:
    if not vkh:
        return None
    return db.execute(
        select(Participant)
        .where(Participant.vkh == vkh, Participant.is_active.is_(True))
        .limit(1)
    ).scalar_one_or_none()


def _confirm_mint(db: Session, evt: ProofEvent, batch: Batch, tx_hash: str) -> None:
    asset = _asset_for(db, evt.batch_id)
    if asset:
        asset.current_utxo_ref = utxo_ref(tx_hash)

    minter = _active_participant_by_vkh(db, evt.signer_vkh)
    if minter:
        if not batch.manufacturer_id:
            batch.manufacturer_id = minter.id
        if not batch.current_holder_id:
            batch.current_holder_id = minter.id

    machine = BatchStateMachine()
    machine.advance(db, batch, BatchStatus.MINTED)
    machine.advance_confirmed(db, batch, BatchStatus.MINTED)


def _confirm_transfer(db: Session, evt: ProofEvent, batch: Batch, tx_hash: str) -> None:
    asset = _asset_for(db, evt.batch_id)
    if asset:
        new_holder_vkh = evt.recipient_vkh
        if not new_holder_vkh and batch.current_holder_id:
            holder = db.get(Participant, batch.current_holder_id)
            new_holder_vkh = holder.vkh if holder else None

        asset.current_utxo_ref = utxo_ref(tx_hash)
        asset.step = (asset.step or 0) + 1
        asset.current_holder_vkh = new_holder_vkh or evt.signer_vkh

    machine = BatchStateMachine()
    machine.advance(db, batch, BatchStatus.IN_TRANSIT)
    machine.advance_confirmed(db, batch, BatchStatus.IN_TRANSIT)


def _confirm_document_anchor(db: Session, evt: ProofEvent, batch: Batch, tx_hash: str) -> None:
    if not evt.build_id:
        return
    db.execute(
        update(DocumentAnchor)
        .where(
            DocumentAnchor.build_id == evt.build_id,
            DocumentAnchor.status != SubmissionStatus.CONFIRMED.value,
        )
        .values(status=SubmissionStatus.CONFIRMED.value, onchain_tx_hash=tx_hash)
        .execution_options(synchronize_session=False)
    )


def _confirm_recall(db: Session, evt: ProofEvent, batch: Batch, tx_hash: str) -> None:
    # declared status already went to RECALLED when the recall was requested
    BatchStateMachine().advance_confirmed(db, batch, BatchStatus.RECALLED)


ConfirmationHandler = Callable[[Session, ProofEvent, Batch, str], None]

CONFIRMATION_HANDLERS: Dict[ProofEventType, ConfirmationHandler] = {
    ProofEventType.MINT: _confirm_mint,
    ProofEventType.TRANSFER: _confirm_transfer,
    ProofEventType.DOCUMENT_ANCHOR: _confirm_document_anchor,
    ProofEventType.RECALL: _confirm_recall,
}

_unhandled = set(ProofEventType) - set(CONFIRMATION_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No confirmation handler for event types: {sorted(t.value for t in _unhandled)}")


class ConfirmationService:
    """
    Converges persisted proof events with on-chain truth.

    apply_confirmation / apply_failure are the only places where a
    SUBMITTED event is settled. Both start with a conditional write
    (WHERE status = 'SUBMITTED'); side effects run only when that write
    hit exactly one row, so concurrent callers (the background loop and a
    manual "check now") cannot apply them twice.
    """

    def __init__(self, adapter: ChainAdapter):
        self.adapter = adapter

    # ---------------------------
    # SETTLEMENT OF ONE EVENT
    # ---------------------------

    def _claim(self, db: Session, event_id: uuid.UUID, values: dict) -> bool:
        result = db.execute(
            update(ProofEvent)
            .where(
                ProofEvent.id == event_id,
                ProofEvent.status == SubmissionStatus.SUBMITTED.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def apply_confirmation(self, db: Session, event_id: uuid.UUID, tx_hash: Optional[str]) -> bool:
        now = _now()
        current = db.get(ProofEvent, event_id)
        if current is None:
            return False
        tx_hash = tx_hash or current.onchain_tx_hash

        values = {
            "status": SubmissionStatus.CONFIRMED.value,
            "last_checked_at": now,
            "updated_at": now,
        }
        if tx_hash:
            values["onchain_tx_hash"] = tx_hash

        try:
            if not self._claim(db, event_id, values):
                db.rollback()
                return False

            evt = db.get(ProofEvent, event_id, populate_existing=True)
            batch = db.get(Batch, evt.batch_id)
            CONFIRMATION_HANDLERS[ProofEventType(evt.event_type)](db, evt, batch, tx_hash or "")
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "proof event confirmed",
            extra={
                "event_id": str(event_id),
                "batch_id": str(evt.batch_id),
                "event_type": evt.event_type,
                "tx_hash": tx_hash,
            },
        )
        return True

    def apply_failure(self, db: Session, event_id: uuid.UUID, message: Optional[str]) -> bool:
        """
        Settle as FAILED. Batch status is left as it is: the optimistic value
        stays until someone retries or intervenes.
        """
        now = _now()
        message = (message or "").strip() or DEFAULT_FAILURE_MESSAGE

        try:
            if not self._claim(db, event_id, {
                "status": SubmissionStatus.FAILED.value,
                "error_message": message,
                "last_checked_at": now,
                "updated_at": now,
            }):
                db.rollback()
                return False

            evt = db.get(ProofEvent, event_id, populate_existing=True)
            if evt.build_id:
                db.execute(
                    update(DocumentAnchor)
                    .where(
                        DocumentAnchor.build_id == evt.build_id,
                        DocumentAnchor.status.in_([
                            SubmissionStatus.PENDING.value,
                            SubmissionStatus.SUBMITTED.value,
                        ]),
                    )
                    .values(status=SubmissionStatus.FAILED.value)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.warning(
            "proof event failed",
            extra={"event_id": str(event_id), "batch_id": str(evt.batch_id), "error": message},
        )
        return True

    def touch(self, db: Session, event_id: uuid.UUID) -> None:
        db.execute(
            update(ProofEvent)
            .where(
                ProofEvent.id == event_id,
                ProofEvent.status == SubmissionStatus.SUBMITTED.value,
            )
            .values(last_checked_at=_now())
            .execution_options(synchronize_session=False)
        )
        db.commit()

    # ---------------------------
    # ONE RECONCILIATION CYCLE
    # ---------------------------

    def check_pending(self, db: Session) -> Dict[str, int]:
        """
        Poll every SUBMITTED event once. A failure while handling one event
        is logged and does not stop the rest of the cycle.
        """
        rows = db.execute(
            select(ProofEvent.id, ProofEvent.submission_id)
            .where(ProofEvent.status == SubmissionStatus.SUBMITTED.value)
            .order_by(ProofEvent.created_at.asc(), ProofEvent.seq.asc())
        ).all()

        confirmed = failed = errors = 0

        for event_id, submission_id in rows:
            if not submission_id:
                continue
            try:
                check = self.adapter.check_submission_status(submission_id)
                if check.status == "confirmed":
                    if self.apply_confirmation(db, event_id, check.tx_hash):
                        confirmed += 1
                elif check.status == "failed":
                    if self.apply_failure(db, event_id, check.error_message):
                        failed += 1
                else:
                    self.touch(db, event_id)
            except Exception:
                db.rollback()
                errors += 1
                logger.exception(
                    "submission check failed",
                    extra={"event_id": str(event_id), "submission_id": submission_id},
                )

        logger.info(
            f"Checked {len(rows)} submissions: {confirmed} confirmed, {failed} failed",
            extra={"checked": len(rows), "confirmed": confirmed, "failed": failed, "errors": errors},
        )
        return {"checked": len(rows), "confirmed": confirmed, "failed": failed, "errors": errors}
