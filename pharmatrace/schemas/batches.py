# pharmatrace/schemas/batches.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BatchCreate(BaseModel):
    batchNumber: Optional[str] = Field(default=None, description="Generated as BATCH-YYYYMMDD-NNNN when omitted")
    product: str = Field(..., min_length=1, max_length=256)
    dosageForm: str = "Tablet"
    mfgDate: date
    expDate: date
    quantity: Decimal = Field(..., gt=0)
    unit: str = "pcs"
    storageConditions: Optional[str] = None
    manufacturerId: Optional[str] = None


class OnChainAssetResponse(BaseModel):
    policyId: Optional[str] = None
    assetName: Optional[str] = None
    fingerprint: Optional[str] = None
    scriptAddress: Optional[str] = None
    step: int
    manufacturerVkh: Optional[str] = None
    currentHolderVkh: Optional[str] = None
    currentUtxoRef: Optional[str] = None


class BatchResponse(BaseModel):
    id: str
    batchNumber: str
    product: str
    status: str
    confirmedStatus: Optional[str] = None
    manufacturerId: Optional[str] = None
    currentHolderId: Optional[str] = None
    originPayload: Optional[Dict[str, Any]] = None
    onChainAsset: Optional[OnChainAssetResponse] = None
    createdAtIso: Optional[str] = None
    updatedAtIso: Optional[str] = None


class BatchListResponse(BaseModel):
    batches: List[BatchResponse]


class ProofEventResponse(BaseModel):
    id: str
    seq: int
    eventType: str
    payloadDigest: Optional[str] = None
    payloadSchema: Optional[str] = None
    signerVkh: Optional[str] = None
    recipientParticipantId: Optional[str] = None
    recipientVkh: Optional[str] = None
    buildId: Optional[str] = None
    signingRequestId: Optional[str] = None
    submissionId: Optional[str] = None
    onChainTxHash: Optional[str] = None
    status: str
    errorMessage: Optional[str] = None
    lastCheckedAtIso: Optional[str] = None
    createdAtIso: Optional[str] = None


class ProofEventListResponse(BaseModel):
    batchId: str
    events: List[ProofEventResponse]
