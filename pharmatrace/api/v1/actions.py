# pharmatrace/api/v1/actions.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmatrace.core.deps import get_lifecycle_service, parse_uuid
from pharmatrace.core.errors import TraceError, to_http_exception
from pharmatrace.core.wallet import WalletSession
from pharmatrace.db.session import get_db
from pharmatrace.schemas.actions import (
    AnchorDocumentRequest,
    CheckPendingResponse,
    ConfirmReceiptRequest,
    ConfirmReceiptResponse,
    MintBatchNftRequest,
    RecallBatchRequest,
    RetryFailedTransactionRequest,
    SigningMaterialResponse,
    SubmitSignedRequest,
    SubmitSignedResponse,
    TransferBatchRequest,
    WalletBound,
)
from pharmatrace.services.lifecycle_service import LifecycleService, SigningMaterial

router = APIRouter(prefix="/actions")


def _wallet(req: WalletBound) -> WalletSession:
    return WalletSession.bind(req.walletAddress, req.walletVkh)


def _material_resp(m: SigningMaterial) -> dict:
    return {
        "proofEventId": str(m.proof_event_id),
        "buildId": m.build_id,
        "signingRequestId": m.signing_request_id,
        "unsignedCbor": m.unsigned_cbor,
        "txBodyHash": m.tx_body_hash,
        "policyId": m.policy_id,
        "assetName": m.asset_name,
        "fingerprint": m.fingerprint,
    }


@router.post("/MintBatchNft", response_model=SigningMaterialResponse)
def mint_batch_nft(
    req: MintBatchNftRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        session = _wallet(req)
        m = svc.mint(db, batch_id=parse_uuid(req.batchId, "batchId"), session=session)
    except TraceError as e:
        raise to_http_exception(e)
    return _material_resp(m)


@router.post("/TransferBatch", response_model=SigningMaterialResponse)
def transfer_batch(
    req: TransferBatchRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        session = _wallet(req)
        m = svc.transfer(
            db,
            batch_id=parse_uuid(req.batchId, "batchId"),
            to_participant_id=parse_uuid(req.toParticipantId, "toParticipantId"),
            reason=req.reason,
            notes=req.notes,
            session=session,
        )
    except TraceError as e:
        raise to_http_exception(e)
    return _material_resp(m)


@router.post("/SubmitSigned", response_model=SubmitSignedResponse)
def submit_signed(
    req: SubmitSignedRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        r = svc.submit_signed(db, signing_request_id=req.signingRequestId, signed_tx_cbor=req.signedTxCbor)
    except TraceError as e:
        raise to_http_exception(e)
    return {"txHash": r.tx_hash, "submissionId": r.submission_id, "status": r.status}


@router.post("/CheckPendingTransactions", response_model=CheckPendingResponse)
def check_pending_transactions(
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    return svc.check_pending(db)


@router.post("/RetryFailedTransaction", response_model=SigningMaterialResponse)
def retry_failed_transaction(
    req: RetryFailedTransactionRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        session = _wallet(req)
        m = svc.retry_failed(db, proof_event_id=parse_uuid(req.proofEventId, "proofEventId"), session=session)
    except TraceError as e:
        raise to_http_exception(e)
    return _material_resp(m)


@router.post("/AnchorDocument", response_model=SigningMaterialResponse)
def anchor_document(
    req: AnchorDocumentRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        session = _wallet(req)
        m = svc.anchor_document(
            db,
            batch_id=parse_uuid(req.batchId, "batchId"),
            document_hash=req.documentHash,
            document_type=req.documentType,
            visibility=req.visibility.value,
            session=session,
        )
    except TraceError as e:
        raise to_http_exception(e)
    return _material_resp(m)


@router.post("/RecallBatch", response_model=SigningMaterialResponse)
def recall_batch(
    req: RecallBatchRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        session = _wallet(req)
        m = svc.recall(db, batch_id=parse_uuid(req.batchId, "batchId"), reason=req.reason, session=session)
    except TraceError as e:
        raise to_http_exception(e)
    return _material_resp(m)


@router.post("/ConfirmReceipt", response_model=ConfirmReceiptResponse)
def confirm_receipt(
    req: ConfirmReceiptRequest,
    db: Session = Depends(get_db),
    svc: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        b = svc.confirm_receipt(db, batch_id=parse_uuid(req.batchId, "batchId"))
    except TraceError as e:
        raise to_http_exception(e)
    return {"batchId": str(b.id), "status": b.status, "confirmedStatus": b.confirmed_status}
