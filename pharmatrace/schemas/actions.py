# pharmatrace/schemas/actions.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from pharmatrace.models.enums import DocumentVisibility


# --- Wallet binding (every signed action carries the caller's wallet) ---
class WalletBound(BaseModel):
    walletAddress: Optional[str] = Field(default=None, description="Connected wallet address (bech32)")
    walletVkh: Optional[str] = Field(default=None, description="Connected wallet verification key hash")


class MintBatchNftRequest(WalletBound):
    batchId: str


class TransferBatchRequest(WalletBound):
    batchId: str
    toParticipantId: str
    reason: Optional[str] = None
    notes: Optional[str] = None


class SubmitSignedRequest(BaseModel):
    signingRequestId: str
    signedTxCbor: str


class RetryFailedTransactionRequest(WalletBound):
    proofEventId: str


class AnchorDocumentRequest(WalletBound):
    batchId: str
    documentHash: str
    documentType: str
    visibility: DocumentVisibility = DocumentVisibility.PUBLIC


class RecallBatchRequest(WalletBound):
    batchId: str
    reason: str


class ConfirmReceiptRequest(BaseModel):
    batchId: str


# --- Responses ---
class SigningMaterialResponse(BaseModel):
    proofEventId: str
    buildId: str
    signingRequestId: str
    unsignedCbor: str
    txBodyHash: str
    policyId: Optional[str] = None
    assetName: Optional[str] = None
    fingerprint: Optional[str] = None


class SubmitSignedResponse(BaseModel):
    txHash: str
    submissionId: str
    status: str


class CheckPendingResponse(BaseModel):
    checked: int
    confirmed: int
    failed: int
    errors: int = 0


class ConfirmReceiptResponse(BaseModel):
    batchId: str
    status: str
    confirmedStatus: Optional[str] = None
