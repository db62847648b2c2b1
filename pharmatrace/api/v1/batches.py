# pharmatrace/api/v1/batches.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pharmatrace.core.deps import parse_uuid
from pharmatrace.core.errors import TraceError, to_http_exception
from pharmatrace.db.session import get_db
from pharmatrace.models.batch import Batch
from pharmatrace.models.enums import BatchStatus
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.proof_event import ProofEvent
from pharmatrace.schemas.batches import (
    BatchCreate,
    BatchListResponse,
    BatchResponse,
    ProofEventListResponse,
)
from pharmatrace.services.batch_service import BatchService

router = APIRouter(prefix="/batches")


def _iso(dt):
    return dt.isoformat() if dt else None


def _str(v):
    return str(v) if v else None


def _asset_resp(a: Optional[OnChainAsset]) -> Optional[dict]:
    if a is None:
        return None
    return {
        "policyId": a.policy_id,
        "assetName": a.asset_name,
        "fingerprint": a.fingerprint,
        "scriptAddress": a.script_address,
        "step": a.step,
        "manufacturerVkh": a.manufacturer_vkh,
        "currentHolderVkh": a.current_holder_vkh,
        "currentUtxoRef": a.current_utxo_ref,
    }


def _to_resp(b: Batch, asset: Optional[OnChainAsset] = None) -> dict:
    return {
        "id": str(b.id),
        "batchNumber": b.batch_number,
        "product": b.product,
        "status": b.status,
        "confirmedStatus": b.confirmed_status,
        "manufacturerId": _str(b.manufacturer_id),
        "currentHolderId": _str(b.current_holder_id),
        "originPayload": b.origin_payload,
        "onChainAsset": _asset_resp(asset),
        "createdAtIso": _iso(b.created_at),
        "updatedAtIso": _iso(b.updated_at),
    }


def _event_resp(e: ProofEvent) -> dict:
    return {
        "id": str(e.id),
        "seq": e.seq,
        "eventType": e.event_type,
        "payloadDigest": e.payload_digest,
        "payloadSchema": e.payload_schema,
        "signerVkh": e.signer_vkh,
        "recipientParticipantId": _str(e.recipient_participant_id),
        "recipientVkh": e.recipient_vkh,
        "buildId": e.build_id,
        "signingRequestId": e.signing_request_id,
        "submissionId": e.submission_id,
        "onChainTxHash": e.onchain_tx_hash,
        "status": e.status,
        "errorMessage": e.error_message,
        "lastCheckedAtIso": _iso(e.last_checked_at),
        "createdAtIso": _iso(e.created_at),
    }


@router.get("", response_model=BatchListResponse)
def list_batches(
    status: Optional[BatchStatus] = Query(default=None),
    db: Session = Depends(get_db),
):
    rows = BatchService().list_batches(db, status=status)
    return {"batches": [_to_resp(b) for b in rows]}


@router.post("", response_model=BatchResponse, status_code=201)
def create_batch(req: BatchCreate, db: Session = Depends(get_db)):
    try:
        manufacturer_id = parse_uuid(req.manufacturerId, "manufacturerId") if req.manufacturerId else None
        b = BatchService().create(
            db,
            batch_number=req.batchNumber,
            product=req.product,
            dosage_form=req.dosageForm,
            mfg_date=req.mfgDate,
            exp_date=req.expDate,
            quantity=req.quantity,
            unit=req.unit,
            storage_conditions=req.storageConditions,
            manufacturer_id=manufacturer_id,
        )
    except TraceError as e:
        raise to_http_exception(e)
    return _to_resp(b)


@router.get("/{batchId}", response_model=BatchResponse)
def get_batch(batchId: str, db: Session = Depends(get_db)):
    svc = BatchService()
    try:
        b = svc.get(db, parse_uuid(batchId, "batchId"))
    except TraceError as e:
        raise to_http_exception(e)
    return _to_resp(b, svc.get_asset(db, b.id))


@router.get("/{batchId}/events", response_model=ProofEventListResponse)
def list_batch_events(batchId: str, db: Session = Depends(get_db)):
    try:
        bid = parse_uuid(batchId, "batchId")
        rows = BatchService().list_events(db, bid)
    except TraceError as e:
        raise to_http_exception(e)
    return {"batchId": str(bid), "events": [_event_resp(e) for e in rows]}
