# pharmatrace/services/lifecycle_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmatrace.core.config import Settings
from pharmatrace.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from pharmatrace.core.hashing import digest
from pharmatrace.core.wallet import WalletSession
from pharmatrace.models.batch import Batch
from pharmatrace.models.document_anchor import DocumentAnchor
from pharmatrace.models.enums import (
    BatchStatus,
    DocumentVisibility,
    ProofEventType,
    SubmissionStatus,
)
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.participant import Participant
from pharmatrace.models.proof_event import ProofEvent
from pharmatrace.services.batch_state_machine import BatchStateMachine
from pharmatrace.services.chain_adapter import ChainAdapter, SigningRequest, TxBuild
from pharmatrace.services.confirmation_service import ConfirmationService

logger = logging.getLogger(__name__)

METADATA_LABEL = "674"
TRANSFER_SCHEMA = "TRACE_TRANSFER_V1"
RECALL_SCHEMA = "TRACE_RECALL_V1"
RECALL_MSG_REASON_CHARS = 60


def _now():
    return datetime.now(timezone.utc)


# Status declared as soon as the signed transaction is accepted for submission
OPTIMISTIC_STATUS_ON_SUBMIT: Dict[ProofEventType, Optional[BatchStatus]] = {
    ProofEventType.MINT: BatchStatus.MINTED,
    ProofEventType.TRANSFER: BatchStatus.IN_TRANSIT,
    ProofEventType.DOCUMENT_ANCHOR: None,
    ProofEventType.RECALL: None,  # already RECALLED when requested
}

_unmapped = set(ProofEventType) - set(OPTIMISTIC_STATUS_ON_SUBMIT)
if _unmapped:
    raise RuntimeError(f"No submit rule for event types: {sorted(t.value for t in _unmapped)}")


@dataclass(frozen=True)
class SigningMaterial:
    """What the caller needs to have the transaction signed by their wallet."""

    build_id: str
    signing_request_id: str
    unsigned_cbor: str
    tx_body_hash: str
    proof_event_id: uuid.UUID
    policy_id: Optional[str] = None
    asset_name: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass(frozen=True)
class Submission:
    tx_hash: str
    submission_id: str
    status: str


def parse_utxo_ref(ref: str) -> Tuple[str, int]:
    tx_hash, sep, index = ref.partition("#")
    if not tx_hash or not sep or not index.isdigit():
        raise ConflictError(f"Malformed UTxO reference: {ref}")
    return tx_hash, int(index)


class LifecycleService:
    """
    Custody actions on a batch.

    Each action checks every precondition before it calls the transaction
    service or writes anything, then persists its rows in one commit.
    If that commit fails after a successful build, the build is left
    orphaned on the service side; it is logged with its build id for
    manual cleanup and not retried.
    """

    def __init__(self, adapter: ChainAdapter, settings: Settings):
        self.adapter = adapter
        self.settings = settings
        self.machine = BatchStateMachine()

    # ─────────────────────────────────────────────
    # INTERNAL READ HELPERS
    # ─────────────────────────────────────────────

    def _get_batch(self, db: Session, batch_id: uuid.UUID) -> Batch:
        batch = db.get(Batch, batch_id)
        if not batch:
            raise NotFoundError(f"Batch {batch_id} not found.")
        return batch

    def _get_asset(self, db: Session, batch_id: uuid.UUID) -> Optional[OnChainAsset]:
        return db.execute(
            select(OnChainAsset).where(OnChainAsset.batch_id == batch_id)
        ).scalar_one_or_none()

    def _active_participant_by_vkh(self, db: Session, vkh: str) -> Optional[Participant]:
        return db.execute(
            select(Participant)
            .where(Participant.vkh == vkh, Participant.is_active.is_(True))
            .limit(1)
        ).scalar_one_or_none()

    def _next_seq(self, db: Session, batch_id: uuid.UUID) -> int:
        mx = db.execute(
            select(func.max(ProofEvent.seq)).where(ProofEvent.batch_id == batch_id)
        ).scalar_one_or_none()
        return int(mx or 0) + 1

    def _new_event(
        self,
        db: Session,
        *,
        batch: Batch,
        event_type: ProofEventType,
        payload_digest: Optional[str],
        session: WalletSession,
        build: TxBuild,
        signing: SigningRequest,
        payload_schema: Optional[str] = None,
        recipient: Optional[Participant] = None,
    ) -> ProofEvent:
        evt = ProofEvent(
            id=uuid.uuid4(),
            batch_id=batch.id,
            seq=self._next_seq(db, batch.id),
            event_type=event_type.value,
            payload_digest=payload_digest,
            payload_schema=payload_schema,
            signer_vkh=session.vkh,
            recipient_participant_id=recipient.id if recipient else None,
            recipient_vkh=recipient.vkh if recipient else None,
            build_id=build.build_id,
            signing_request_id=signing.signing_request_id,
            status=SubmissionStatus.PENDING.value,
            created_at=_now(),
        )
        db.add(evt)
        return evt

    def _discard_build(self, db: Session, build_id: str, action: str) -> None:
        db.rollback()
        logger.error(
            "build persisted on transaction service but not locally",
            extra={"action": action, "build_id": build_id},
        )

    def _commit_after_build(
        self,
        db: Session,
        build_id: str,
        action: str,
        conflict_message: str = "Batch was changed by another request; reload and retry.",
    ) -> None:
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request committed the same row first
            self._discard_build(db, build_id, action)
            raise ConflictError(conflict_message)
        except Exception:
            self._discard_build(db, build_id, action)
            raise

    @staticmethod
    def _material(evt: ProofEvent, signing: SigningRequest, **asset) -> SigningMaterial:
        return SigningMaterial(
            build_id=evt.build_id,
            signing_request_id=signing.signing_request_id,
            unsigned_cbor=signing.unsigned_tx_cbor,
            tx_body_hash=signing.tx_body_hash,
            proof_event_id=evt.id,
            **asset,
        )

    # ─────────────────────────────────────────────
    # MINT
    # ─────────────────────────────────────────────

    def mint(self, db: Session, *, batch_id: uuid.UUID, session: WalletSession) -> SigningMaterial:
        """
        Rules:
        - batch exists and is DRAFT
        - at most one on-chain asset per batch
        The minter becomes recorded manufacturer (if unset) and current holder.
        """
        batch = self._get_batch(db, batch_id)
        self.machine.assert_status_in(batch, [BatchStatus.DRAFT], "Mint")
        if self._get_asset(db, batch.id):
            raise ConflictError("Batch already has an on-chain asset.")

        origin_digest = digest(batch.origin_payload) if batch.origin_payload else ""

        build = self.adapter.build_mint(
            sender_address=session.address,
            manufacturer_vkh=session.vkh,
            batch_number=batch.batch_number,
        )
        signing = self.adapter.create_signing_request(build.build_id)

        db.add(OnChainAsset(
            batch_id=batch.id,
            policy_id=build.policy_id,
            asset_name=build.asset_name,
            fingerprint=build.fingerprint,
            script_address=build.script_address,
            step=0,
            manufacturer_vkh=session.vkh,
            current_holder_vkh=session.vkh,
        ))

        minter = self._active_participant_by_vkh(db, session.vkh)
        if minter:
            batch.manufacturer_id = batch.manufacturer_id or minter.id
            batch.current_holder_id = minter.id

        evt = self._new_event(
            db,
            batch=batch,
            event_type=ProofEventType.MINT,
            payload_digest=origin_digest,
            session=session,
            build=build,
            signing=signing,
        )
        self._commit_after_build(db, build.build_id, "mint", "Batch already has an on-chain asset.")

        logger.info(
            "mint built",
            extra={"batch_id": str(batch.id), "event_id": str(evt.id), "build_id": build.build_id},
        )
        return self._material(
            evt,
            signing,
            policy_id=build.policy_id,
            asset_name=build.asset_name,
            fingerprint=build.fingerprint,
        )

    # ─────────────────────────────────────────────
    # TRANSFER
    # ─────────────────────────────────────────────

    def _assert_holder(self, asset: OnChainAsset, session: WalletSession) -> None:
        if asset.current_holder_vkh:
            if asset.current_holder_vkh != session.vkh:
                raise ForbiddenError("Only the current holder can transfer this batch.")
        elif self.settings.strict_holder_check:
            raise ForbiddenError("Batch has no recorded holder yet; transfer is not allowed.")

    def transfer(
        self,
        db: Session,
        *,
        batch_id: uuid.UUID,
        to_participant_id: uuid.UUID,
        reason: Optional[str],
        notes: Optional[str],
        session: WalletSession,
    ) -> SigningMaterial:
        """
        Rules:
        - batch MINTED or IN_TRANSIT
        - asset has a confirmed UTxO ref and a manufacturer VKH
        - caller is the recorded holder
        - target participant exists and has a VKH
        Holder fields are updated optimistically; the confirmation overwrites them.
        """
        batch = self._get_batch(db, batch_id)
        self.machine.assert_status_in(batch, [BatchStatus.MINTED, BatchStatus.IN_TRANSIT], "Transfer")

        asset = self._get_asset(db, batch.id)
        if not asset:
            raise ConflictError("No on-chain asset found for batch.")
        if not asset.current_utxo_ref:
            raise ConflictError("No current UTxO reference: mint not yet confirmed.")
        if not asset.manufacturer_vkh:
            raise ConflictError("On-chain asset has no manufacturer VKH.")
        self._assert_holder(asset, session)

        target = db.get(Participant, to_participant_id)
        if not target:
            raise NotFoundError(f"Target participant {to_participant_id} not found.")
        if not target.vkh:
            raise ValidationError("Target participant has no verification key hash.")

        script_tx_hash, script_output_index = parse_utxo_ref(asset.current_utxo_ref)

        build = self.adapter.build_transfer(
            sender_address=session.address,
            manufacturer_vkh=asset.manufacturer_vkh,
            current_holder_vkh=session.vkh,
            next_holder_vkh=target.vkh,
            batch_number=batch.batch_number,
            current_step=asset.step,
            script_tx_hash=script_tx_hash,
            script_output_index=script_output_index,
        )
        signing = self.adapter.create_signing_request(build.build_id)

        transfer_digest = digest({
            "reason": reason or "ROUTINE",
            "notes": notes or "",
            "timestamp": _now().isoformat(),
        })
        evt = self._new_event(
            db,
            batch=batch,
            event_type=ProofEventType.TRANSFER,
            payload_digest=transfer_digest,
            payload_schema=TRANSFER_SCHEMA,
            session=session,
            build=build,
            signing=signing,
            recipient=target,
        )

        batch.current_holder_id = target.id
        asset.current_holder_vkh = target.vkh

        self._commit_after_build(db, build.build_id, "transfer")

        logger.info(
            "transfer built",
            extra={
                "batch_id": str(batch.id),
                "event_id": str(evt.id),
                "build_id": build.build_id,
                "to_participant_id": str(target.id),
            },
        )
        return self._material(evt, signing)

    # ─────────────────────────────────────────────
    # SUBMIT SIGNED
    # ─────────────────────────────────────────────

    def submit_signed(self, db: Session, *, signing_request_id: str, signed_tx_cbor: str) -> Submission:
        if not signing_request_id or not signed_tx_cbor:
            raise ValidationError("signingRequestId and signedTxCbor are required.")

        evt = db.execute(
            select(ProofEvent)
            .where(
                ProofEvent.signing_request_id == signing_request_id,
                ProofEvent.status == SubmissionStatus.PENDING.value,
            )
            .order_by(ProofEvent.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        anchor = db.execute(
            select(DocumentAnchor)
            .where(
                DocumentAnchor.signing_request_id == signing_request_id,
                DocumentAnchor.status == SubmissionStatus.PENDING.value,
            )
            .order_by(DocumentAnchor.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if not evt and not anchor:
            raise NotFoundError(f"No pending transaction for signing request {signing_request_id}.")

        result = self.adapter.submit_signed(signing_request_id, signed_tx_cbor)
        now = _now()

        if evt:
            moved = db.execute(
                update(ProofEvent)
                .where(ProofEvent.id == evt.id, ProofEvent.status == SubmissionStatus.PENDING.value)
                .values(
                    status=SubmissionStatus.SUBMITTED.value,
                    onchain_tx_hash=result.tx_hash or None,
                    submission_id=result.submission_id or None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1

            target = OPTIMISTIC_STATUS_ON_SUBMIT[ProofEventType(evt.event_type)]
            if moved and target is not None:
                self.machine.advance(db, self._get_batch(db, evt.batch_id), target)

        if anchor:
            db.execute(
                update(DocumentAnchor)
                .where(DocumentAnchor.id == anchor.id, DocumentAnchor.status == SubmissionStatus.PENDING.value)
                .values(
                    status=SubmissionStatus.SUBMITTED.value,
                    onchain_tx_hash=result.tx_hash or None,
                    submission_id=result.submission_id or None,
                )
                .execution_options(synchronize_session=False)
            )

        try:
            db.commit()
        except Exception:
            db.rollback()
            logger.error(
                "transaction submitted but not recorded",
                extra={"signing_request_id": signing_request_id, "tx_hash": result.tx_hash},
            )
            raise

        logger.info(
            "signed transaction submitted",
            extra={
                "signing_request_id": signing_request_id,
                "tx_hash": result.tx_hash,
                "submission_id": result.submission_id,
            },
        )
        return Submission(
            tx_hash=result.tx_hash,
            submission_id=result.submission_id,
            status=SubmissionStatus.SUBMITTED.value,
        )

    # ─────────────────────────────────────────────
    # RECONCILIATION (manual "check now")
    # ─────────────────────────────────────────────

    def check_pending(self, db: Session) -> Dict[str, int]:
        return ConfirmationService(self.adapter).check_pending(db)

    # ─────────────────────────────────────────────
    # RETRY
    # ─────────────────────────────────────────────

    def retry_failed(self, db: Session, *, proof_event_id: uuid.UUID, session: WalletSession) -> SigningMaterial:
        """
        Rebuild the transaction of a FAILED mint or transfer from the state
        recorded at the time, and put the event back to PENDING.
        A transfer retry must come from the wallet that signed the original.
        """
        evt = db.get(ProofEvent, proof_event_id)
        if not evt:
            raise NotFoundError(f"ProofEvent {proof_event_id} not found.")
        if evt.status != SubmissionStatus.FAILED.value:
            raise ConflictError(f"ProofEvent status must be FAILED, is {evt.status}.")

        batch = self._get_batch(db, evt.batch_id)
        event_type = ProofEventType(evt.event_type)
        if event_type not in (ProofEventType.MINT, ProofEventType.TRANSFER):
            raise UnsupportedOperationError(f"Cannot retry event type {evt.event_type}.")

        asset = self._get_asset(db, batch.id)

        if event_type == ProofEventType.MINT:
            build = self.adapter.build_mint(
                sender_address=session.address,
                manufacturer_vkh=(asset.manufacturer_vkh if asset and asset.manufacturer_vkh else session.vkh),
                batch_number=batch.batch_number,
            )
            if asset:
                asset.policy_id = build.policy_id or asset.policy_id
                asset.fingerprint = build.fingerprint or asset.fingerprint
                asset.script_address = build.script_address or asset.script_address
        else:
            if not asset or not asset.current_utxo_ref:
                raise ConflictError("No current UTxO reference for retry.")
            if not asset.manufacturer_vkh:
                raise ConflictError("On-chain asset has no manufacturer VKH.")
            if not evt.recipient_vkh:
                raise ConflictError("Failed transfer has no recorded recipient.")
            if evt.signer_vkh and evt.signer_vkh != session.vkh:
                raise ForbiddenError("Only the original signer can retry this transfer.")

            script_tx_hash, script_output_index = parse_utxo_ref(asset.current_utxo_ref)
            build = self.adapter.build_transfer(
                sender_address=session.address,
                manufacturer_vkh=asset.manufacturer_vkh,
                current_holder_vkh=session.vkh,
                next_holder_vkh=evt.recipient_vkh,
                batch_number=batch.batch_number,
                current_step=asset.step,
                script_tx_hash=script_tx_hash,
                script_output_index=script_output_index,
            )

        signing = self.adapter.create_signing_request(build.build_id)

        reset = db.execute(
            update(ProofEvent)
            .where(ProofEvent.id == evt.id, ProofEvent.status == SubmissionStatus.FAILED.value)
            .values(
                status=SubmissionStatus.PENDING.value,
                build_id=build.build_id,
                signing_request_id=signing.signing_request_id,
                submission_id=None,
                onchain_tx_hash=None,
                error_message=None,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if reset.rowcount != 1:
            self._discard_build(db, build.build_id, "retry")
            raise ConflictError("ProofEvent changed while the retry was being built.")

        self._commit_after_build(db, build.build_id, "retry")
        db.refresh(evt)

        logger.info(
            "failed transaction rebuilt",
            extra={"event_id": str(evt.id), "event_type": evt.event_type, "build_id": build.build_id},
        )
        return self._material(evt, signing)

    # ─────────────────────────────────────────────
    # METADATA-ONLY ACTIONS
    # ─────────────────────────────────────────────

    def anchor_document(
        self,
        db: Session,
        *,
        batch_id: uuid.UUID,
        document_hash: str,
        document_type: str,
        visibility: Optional[str],
        session: WalletSession,
    ) -> SigningMaterial:
        if not document_hash or not document_type:
            raise ValidationError("documentHash and documentType are required.")
        try:
            vis = DocumentVisibility(visibility or DocumentVisibility.PUBLIC.value)
        except ValueError:
            raise ValidationError(f"Unknown visibility {visibility}.")

        batch = self._get_batch(db, batch_id)

        metadata = {
            METADATA_LABEL: {
                "msg": [f"TRACE:DOC_ANCHOR:{document_type}"],
                "batch": batch.batch_number,
                "hash": document_hash,
                "vis": vis.value,
            }
        }
        build = self.adapter.build_anchor(sender_address=session.address, metadata=metadata)
        signing = self.adapter.create_signing_request(build.build_id)

        db.add(DocumentAnchor(
            batch_id=batch.id,
            document_hash=document_hash,
            document_type=document_type,
            visibility=vis.value,
            build_id=build.build_id,
            signing_request_id=signing.signing_request_id,
            status=SubmissionStatus.PENDING.value,
            created_at=_now(),
        ))
        evt = self._new_event(
            db,
            batch=batch,
            event_type=ProofEventType.DOCUMENT_ANCHOR,
            payload_digest=document_hash,
            payload_schema=document_type,
            session=session,
            build=build,
            signing=signing,
        )
        self._commit_after_build(db, build.build_id, "anchor")

        logger.info(
            "document anchor built",
            extra={"batch_id": str(batch.id), "event_id": str(evt.id), "build_id": build.build_id},
        )
        return self._material(evt, signing)

    def recall(self, db: Session, *, batch_id: uuid.UUID, reason: Optional[str], session: WalletSession) -> SigningMaterial:
        """
        Recall is safety-critical: the batch goes to RECALLED right away,
        without waiting for the metadata transaction to settle.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Recall reason is required.")

        batch = self._get_batch(db, batch_id)
        if batch.status == BatchStatus.DRAFT.value:
            raise ConflictError("Cannot recall a DRAFT batch.")
        if batch.status == BatchStatus.RECALLED.value:
            raise ConflictError("Batch is already recalled.")
        self.machine.assert_transition(batch, BatchStatus.RECALLED)

        metadata = {
            METADATA_LABEL: {
                "msg": [f"TRACE:RECALL:{reason[:RECALL_MSG_REASON_CHARS]}"],
                "batch": batch.batch_number,
                "reason": reason,
                "recalledBy": session.vkh,
                "hash": digest({
                    "reason": reason,
                    "batchId": str(batch.id),
                    "timestamp": _now().isoformat(),
                }),
            }
        }
        build = self.adapter.build_anchor(sender_address=session.address, metadata=metadata)
        signing = self.adapter.create_signing_request(build.build_id)

        evt = self._new_event(
            db,
            batch=batch,
            event_type=ProofEventType.RECALL,
            payload_digest=digest({"reason": reason}),
            payload_schema=RECALL_SCHEMA,
            session=session,
            build=build,
            signing=signing,
        )
        try:
            self.machine.transition(
                db, batch, BatchStatus.RECALLED,
                expected=self.machine.sources_of(BatchStatus.RECALLED),
            )
        except ConflictError:
            self._discard_build(db, build.build_id, "recall")
            raise

        self._commit_after_build(db, build.build_id, "recall")

        logger.warning(
            "batch recalled",
            extra={"batch_id": str(batch.id), "event_id": str(evt.id), "reason": reason},
        )
        return self._material(evt, signing)

    # ─────────────────────────────────────────────
    # BUSINESS-ONLY TRANSITION
    # ─────────────────────────────────────────────

    def confirm_receipt(self, db: Session, *, batch_id: uuid.UUID) -> Batch:
        batch = self._get_batch(db, batch_id)
        if batch.status != BatchStatus.IN_TRANSIT.value:
            raise ConflictError(f"Batch must be IN_TRANSIT to confirm receipt, is {batch.status}.")

        try:
            self.machine.transition(db, batch, BatchStatus.DELIVERED)
        except ConflictError:
            db.rollback()
            raise
        self.machine.advance_confirmed(db, batch, BatchStatus.DELIVERED)
        db.commit()
        db.refresh(batch)
        return batch
