# pharmatrace/services/batch_service.py
from __future__ import annotations

import random
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmatrace.core.errors import ConflictError, NotFoundError, ValidationError
from pharmatrace.models.batch import Batch
from pharmatrace.models.enums import BatchStatus
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.participant import Participant
from pharmatrace.models.proof_event import ProofEvent


def generate_batch_number(today: Optional[date] = None) -> str:
    today = today or datetime.now(timezone.utc).date()
    return f"BATCH-{today.strftime('%Y%m%d')}-{random.randint(0, 9999):04d}"


def build_origin_payload(
    *,
    product: str,
    batch_number: str,
    dosage_form: str,
    mfg_date: date,
    exp_date: date,
    quantity: Decimal,
    unit: str,
    storage_conditions: Optional[str] = None,
) -> Dict[str, Any]:
    """
    The document whose digest goes into the MINT proof event. Key order does
    not matter (the digest canonicalizes); storageConditions is omitted when
    empty so an unset value and an absent key hash the same.
    """
    payload: Dict[str, Any] = {
        "product": product,
        "batch": batch_number,
        "dosageForm": dosage_form,
        "mfgDate": mfg_date.isoformat(),
        "expDate": exp_date.isoformat(),
        "quantity": int(quantity) if quantity == quantity.to_integral_value() else float(quantity),
        "unit": unit,
    }
    if storage_conditions:
        payload["storageConditions"] = storage_conditions
    return payload


class BatchService:
    def create(
        self,
        db: Session,
        *,
        product: str,
        dosage_form: str,
        mfg_date: date,
        exp_date: date,
        quantity: Decimal,
        unit: str,
        batch_number: Optional[str] = None,
        storage_conditions: Optional[str] = None,
        manufacturer_id: Optional[uuid.UUID] = None,
    ) -> Batch:
        product = (product or "").strip()
        if not product:
            raise ValidationError("Product name is required.")
        if exp_date < mfg_date:
            raise ValidationError("Expiry date must not be before the manufacturing date.")

        batch_number = (batch_number or "").strip() or generate_batch_number()
        if db.execute(select(Batch.id).where(Batch.batch_number == batch_number)).first():
            raise ConflictError(f"Batch number {batch_number} already exists.")

        if manufacturer_id is not None and not db.get(Participant, manufacturer_id):
            raise NotFoundError(f"Participant {manufacturer_id} not found.")

        b = Batch(
            id=uuid.uuid4(),
            batch_number=batch_number,
            product=product,
            status=BatchStatus.DRAFT.value,
            manufacturer_id=manufacturer_id,
            current_holder_id=manufacturer_id,
            origin_payload=build_origin_payload(
                product=product,
                batch_number=batch_number,
                dosage_form=dosage_form,
                mfg_date=mfg_date,
                exp_date=exp_date,
                quantity=quantity,
                unit=unit,
                storage_conditions=storage_conditions,
            ),
        )
        db.add(b)
        db.commit()
        db.refresh(b)
        return b

    def list_batches(self, db: Session, *, status: Optional[BatchStatus] = None) -> List[Batch]:
        q = select(Batch)
        if status is not None:
            q = q.where(Batch.status == status.value)
        return list(db.execute(q.order_by(Batch.created_at.desc())).scalars().all())

    def get(self, db: Session, batch_id: uuid.UUID) -> Batch:
        b = db.get(Batch, batch_id)
        if not b:
            raise NotFoundError(f"Batch {batch_id} not found.")
        return b

    def get_asset(self, db: Session, batch_id: uuid.UUID) -> Optional[OnChainAsset]:
        return db.execute(
            select(OnChainAsset).where(OnChainAsset.batch_id == batch_id)
        ).scalar_one_or_none()

    def list_events(self, db: Session, batch_id: uuid.UUID) -> List[ProofEvent]:
        self.get(db, batch_id)
        return list(
            db.execute(
                select(ProofEvent)
                .where(ProofEvent.batch_id == batch_id)
                .order_by(ProofEvent.created_at.asc(), ProofEvent.seq.asc())
            ).scalars().all()
        )
