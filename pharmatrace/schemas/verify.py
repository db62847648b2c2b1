# pharmatrace/schemas/verify.py
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class VerificationStep(BaseModel):
    step: int
    eventType: str
    holder: Optional[str] = None
    recipient: Optional[str] = None
    payloadDigest: Optional[str] = None
    txHash: Optional[str] = None
    status: str
    # verified | not_found | check_failed | pending | failed | awaiting_signature
    onChainStatus: str
    createdAtIso: Optional[str] = None


class DocumentAnchorSummary(BaseModel):
    documentHash: str
    documentType: str
    visibility: str
    txHash: Optional[str] = None
    status: str


class VerificationReport(BaseModel):
    batchId: str
    batchNumber: str
    product: str
    status: str
    confirmedStatus: Optional[str] = None
    fingerprint: Optional[str] = None
    policyId: Optional[str] = None
    currentHolderVkh: Optional[str] = None
    currentHolderName: Optional[str] = None
    step: int
    isValid: bool
    onChainMatch: bool
    steps: List[VerificationStep]
    documentAnchors: List[DocumentAnchorSummary]
