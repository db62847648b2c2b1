# pharmatrace/api/v1/verify.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmatrace.core.deps import get_verification_service
from pharmatrace.core.errors import TraceError, to_http_exception
from pharmatrace.db.session import get_db
from pharmatrace.schemas.verify import VerificationReport
from pharmatrace.services.verification_service import VerificationService

router = APIRouter(prefix="/verify")


# Public: no wallet needed
@router.get("/{batchIdOrFingerprint}", response_model=VerificationReport)
def verify_batch(
    batchIdOrFingerprint: str,
    db: Session = Depends(get_db),
    svc: VerificationService = Depends(get_verification_service),
):
    try:
        return svc.verify_batch(db, batchIdOrFingerprint)
    except TraceError as e:
        raise to_http_exception(e)
