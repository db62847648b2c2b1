import uuid
from datetime import date
from decimal import Decimal

from pharmatrace.core.wallet import WalletSession
from pharmatrace.models.enums import ParticipantRole
from pharmatrace.models.participant import Participant
from pharmatrace.services.batch_service import BatchService

MANUFACTURER_VKH = "a1" * 28
DISTRIBUTOR_VKH = "b2" * 28
PHARMACY_VKH = "c3" * 28

MANUFACTURER_WALLET = WalletSession.bind("addr_test1qmanufacturer", MANUFACTURER_VKH)
DISTRIBUTOR_WALLET = WalletSession.bind("addr_test1qdistributor", DISTRIBUTOR_VKH)
PHARMACY_WALLET = WalletSession.bind("addr_test1qpharmacy", PHARMACY_VKH)


def create_participant(db, name, role, vkh=None):
    p = Participant(
        id=uuid.uuid4(),
        name=name,
        role=role.value,
        address=f"addr_test1q{name.lower().replace(' ', '')}",
        vkh=vkh,
        is_active=True,
    )
    db.add(p)
    db.commit()
    return p


def create_supply_chain(db):
    return (
        create_participant(db, "Acme Pharma", ParticipantRole.MANUFACTURER, MANUFACTURER_VKH),
        create_participant(db, "EuroMed Distribution", ParticipantRole.DISTRIBUTOR, DISTRIBUTOR_VKH),
        create_participant(db, "City Pharmacy", ParticipantRole.PHARMACY, PHARMACY_VKH),
    )


def create_batch(db, batch_number="BATCH-20260101-0001", product="Amoxicillin 500mg"):
    return BatchService().create(
        db,
        batch_number=batch_number,
        product=product,
        dosage_form="Capsule",
        mfg_date=date(2026, 1, 1),
        exp_date=date(2028, 1, 1),
        quantity=Decimal("10000"),
        unit="pcs",
        storage_conditions="Below 25C",
    )


def last_submission_id(chain):
    return sorted(chain.submissions, key=lambda s: int(s.split("-")[1]))[-1]


def mint_and_submit(lifecycle, db, chain, batch, wallet=MANUFACTURER_WALLET):
    material = lifecycle.mint(db, batch_id=batch.id, session=wallet)
    lifecycle.submit_signed(db, signing_request_id=material.signing_request_id, signed_tx_cbor="a100witness")
    return material, last_submission_id(chain)


def mint_and_confirm(lifecycle, db, chain, batch, wallet=MANUFACTURER_WALLET):
    material, sub_id = mint_and_submit(lifecycle, db, chain, batch, wallet)
    tx_hash = chain.confirm(sub_id)
    lifecycle.check_pending(db)
    return material, tx_hash


def transfer_and_submit(lifecycle, db, chain, batch, to, wallet, reason=None):
    material = lifecycle.transfer(
        db,
        batch_id=batch.id,
        to_participant_id=to.id,
        reason=reason,
        notes=None,
        session=wallet,
    )
    lifecycle.submit_signed(db, signing_request_id=material.signing_request_id, signed_tx_cbor="a100witness")
    return material, last_submission_id(chain)
