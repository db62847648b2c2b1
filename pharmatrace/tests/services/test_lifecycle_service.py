import uuid

import pytest

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
from pharmatrace.models.enums import BatchStatus, ProofEventType, SubmissionStatus
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.proof_event import ProofEvent
from pharmatrace.services.lifecycle_service import LifecycleService
from pharmatrace.tests.helpers import (
    DISTRIBUTOR_VKH,
    DISTRIBUTOR_WALLET,
    MANUFACTURER_VKH,
    MANUFACTURER_WALLET,
    PHARMACY_VKH,
    PHARMACY_WALLET,
    create_batch,
    create_supply_chain,
    mint_and_confirm,
    mint_and_submit,
    transfer_and_submit,
)


def asset_of(db, batch):
    db.expire_all()
    return db.query(OnChainAsset).filter(OnChainAsset.batch_id == batch.id).one()


def events_of(db, batch):
    db.expire_all()
    return (
        db.query(ProofEvent)
        .filter(ProofEvent.batch_id == batch.id)
        .order_by(ProofEvent.created_at, ProofEvent.seq)
        .all()
    )


# ---------------------------
# WALLET BINDING
# ---------------------------

@pytest.mark.parametrize("address,vkh", [(None, MANUFACTURER_VKH), ("addr_test1q", None), ("  ", " ")])
def test_wallet_required(address, vkh):
    with pytest.raises(ValidationError):
        WalletSession.bind(address, vkh)


# ---------------------------
# MINT
# ---------------------------

def test_mint_creates_asset_and_pending_event(db, lifecycle, chain):
    manufacturer, _, _ = create_supply_chain(db)
    batch = create_batch(db)

    m = lifecycle.mint(db, batch_id=batch.id, session=MANUFACTURER_WALLET)

    assert m.build_id and m.signing_request_id and m.unsigned_cbor
    assert m.fingerprint.startswith("asset1")

    asset = asset_of(db, batch)
    assert asset.step == 0
    assert asset.manufacturer_vkh == MANUFACTURER_VKH
    assert asset.current_holder_vkh == MANUFACTURER_VKH
    assert asset.current_utxo_ref is None

    (evt,) = events_of(db, batch)
    assert evt.event_type == ProofEventType.MINT.value
    assert evt.status == SubmissionStatus.PENDING.value
    assert evt.payload_digest == digest(batch.origin_payload)
    assert evt.seq == 1

    db.refresh(batch)
    assert batch.status == BatchStatus.DRAFT.value
    assert batch.current_holder_id == manufacturer.id


def test_mint_twice_conflicts(db, lifecycle):
    create_supply_chain(db)
    batch = create_batch(db)
    lifecycle.mint(db, batch_id=batch.id, session=MANUFACTURER_WALLET)

    with pytest.raises(ConflictError):
        lifecycle.mint(db, batch_id=batch.id, session=MANUFACTURER_WALLET)


def test_mint_unknown_batch(db, lifecycle, chain):
    with pytest.raises(NotFoundError):
        lifecycle.mint(db, batch_id=uuid.uuid4(), session=MANUFACTURER_WALLET)
    assert chain.calls == []


def test_submit_then_confirm_mint(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)

    _, sub_id = mint_and_submit(lifecycle, db, chain, batch)
    db.refresh(batch)
    assert batch.status == BatchStatus.MINTED.value
    assert batch.confirmed_status is None

    tx_hash = chain.confirm(sub_id)
    result = lifecycle.check_pending(db)
    assert result["checked"] == 1
    assert result["confirmed"] == 1

    assert asset_of(db, batch).current_utxo_ref == f"{tx_hash}#0"
    db.refresh(batch)
    assert batch.status == BatchStatus.MINTED.value
    assert batch.confirmed_status == BatchStatus.MINTED.value
    (evt,) = events_of(db, batch)
    assert evt.status == SubmissionStatus.CONFIRMED.value
    assert evt.onchain_tx_hash == tx_hash


def test_submit_unknown_signing_request_makes_no_call(db, lifecycle, chain):
    with pytest.raises(NotFoundError):
        lifecycle.submit_signed(db, signing_request_id="sr-404", signed_tx_cbor="a100")
    assert chain.calls == []


def test_submit_requires_both_fields(db, lifecycle):
    with pytest.raises(ValidationError):
        lifecycle.submit_signed(db, signing_request_id="", signed_tx_cbor="a100")


# ---------------------------
# TRANSFER
# ---------------------------

def test_transfer_before_mint_confirmed_conflicts_without_build(db, lifecycle, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    mint_and_submit(lifecycle, db, chain, batch)

    with pytest.raises(ConflictError):
        lifecycle.transfer(
            db, batch_id=batch.id, to_participant_id=distributor.id,
            reason=None, notes=None, session=MANUFACTURER_WALLET,
        )
    assert not chain.called("BuildPlutusSpendTransaction")


def test_transfer_draft_batch_conflicts(db, lifecycle):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    with pytest.raises(ConflictError):
        lifecycle.transfer(
            db, batch_id=batch.id, to_participant_id=distributor.id,
            reason=None, notes=None, session=MANUFACTURER_WALLET,
        )


def test_transfer_by_non_holder_is_forbidden(db, lifecycle, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)

    with pytest.raises(ForbiddenError):
        lifecycle.transfer(
            db, batch_id=batch.id, to_participant_id=distributor.id,
            reason=None, notes=None, session=PHARMACY_WALLET,
        )
    assert not chain.called("BuildPlutusSpendTransaction")


def test_transfer_to_unknown_participant(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)

    with pytest.raises(NotFoundError):
        lifecycle.transfer(
            db, batch_id=batch.id, to_participant_id=uuid.uuid4(),
            reason=None, notes=None, session=MANUFACTURER_WALLET,
        )


def test_transfer_flow_moves_custody(db, lifecycle, chain):
    _, distributor, pharmacy = create_supply_chain(db)
    batch = create_batch(db)
    _, mint_tx = mint_and_confirm(lifecycle, db, chain, batch)

    m, sub_id = transfer_and_submit(lifecycle, db, chain, batch, distributor, MANUFACTURER_WALLET)

    _, path, body = chain.calls[-3]
    assert path.endswith("/BuildPlutusSpendTransaction")
    assert body["scriptTxHash"] == mint_tx
    assert body["scriptOutputIndex"] == 0

    db.refresh(batch)
    assert batch.status == BatchStatus.IN_TRANSIT.value
    assert batch.current_holder_id == distributor.id

    tx_hash = chain.confirm(sub_id)
    lifecycle.check_pending(db)

    asset = asset_of(db, batch)
    assert asset.step == 1
    assert asset.current_utxo_ref == f"{tx_hash}#0"
    assert asset.current_holder_vkh == DISTRIBUTOR_VKH
    db.refresh(batch)
    assert batch.confirmed_status == BatchStatus.IN_TRANSIT.value

    # second hop, signed by the new holder
    _, sub_id = transfer_and_submit(lifecycle, db, chain, batch, pharmacy, DISTRIBUTOR_WALLET, reason="RESTOCK")
    chain.confirm(sub_id)
    lifecycle.check_pending(db)

    asset = asset_of(db, batch)
    assert asset.step == 2
    assert asset.current_holder_vkh == PHARMACY_VKH

    transfer = events_of(db, batch)[-1]
    assert transfer.payload_schema == "TRACE_TRANSFER_V1"
    assert transfer.recipient_participant_id == pharmacy.id
    assert [e.seq for e in events_of(db, batch)] == [1, 2, 3]


# ---------------------------
# FAILURE / RETRY
# ---------------------------

def test_failed_mint_keeps_optimistic_status_and_can_be_retried(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)
    first, sub_id = mint_and_submit(lifecycle, db, chain, batch)

    chain.fail(sub_id, None)
    result = lifecycle.check_pending(db)
    assert result["failed"] == 1

    (evt,) = events_of(db, batch)
    assert evt.status == SubmissionStatus.FAILED.value
    assert evt.error_message
    db.refresh(batch)
    assert batch.status == BatchStatus.MINTED.value
    assert batch.confirmed_status is None

    retried = lifecycle.retry_failed(db, proof_event_id=evt.id, session=MANUFACTURER_WALLET)
    assert retried.build_id != first.build_id

    (evt,) = events_of(db, batch)
    assert evt.status == SubmissionStatus.PENDING.value
    assert evt.error_message is None
    assert evt.submission_id is None
    assert evt.onchain_tx_hash is None
    assert evt.signing_request_id == retried.signing_request_id


def test_retry_of_non_failed_event_conflicts(db, lifecycle):
    create_supply_chain(db)
    batch = create_batch(db)
    m = lifecycle.mint(db, batch_id=batch.id, session=MANUFACTURER_WALLET)

    with pytest.raises(ConflictError):
        lifecycle.retry_failed(db, proof_event_id=m.proof_event_id, session=MANUFACTURER_WALLET)


def test_retry_of_unknown_event(db, lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.retry_failed(db, proof_event_id=uuid.uuid4(), session=MANUFACTURER_WALLET)


def test_retry_failed_transfer_goes_to_recorded_recipient(db, lifecycle, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)
    m, sub_id = transfer_and_submit(lifecycle, db, chain, batch, distributor, MANUFACTURER_WALLET)
    chain.fail(sub_id, "script validation failed")
    lifecycle.check_pending(db)

    with pytest.raises(ForbiddenError):
        lifecycle.retry_failed(db, proof_event_id=m.proof_event_id, session=PHARMACY_WALLET)

    lifecycle.retry_failed(db, proof_event_id=m.proof_event_id, session=MANUFACTURER_WALLET)

    _, path, body = chain.calls[-2]
    assert path.endswith("/BuildPlutusSpendTransaction")
    assert DISTRIBUTOR_VKH in body["redeemerJson"]
    assert '"int": 1' in body["inlineDatumJson"]


def test_retry_of_document_anchor_is_unsupported(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)
    m = lifecycle.anchor_document(
        db, batch_id=batch.id, document_hash="ab" * 32, document_type="COA",
        visibility="PUBLIC", session=MANUFACTURER_WALLET,
    )
    lifecycle.submit_signed(db, signing_request_id=m.signing_request_id, signed_tx_cbor="a100")
    chain.fail(sorted(chain.submissions)[-1])
    lifecycle.check_pending(db)

    with pytest.raises(UnsupportedOperationError):
        lifecycle.retry_failed(db, proof_event_id=m.proof_event_id, session=MANUFACTURER_WALLET)


# ---------------------------
# DOCUMENT ANCHOR / RECALL / RECEIPT
# ---------------------------

def test_anchor_document_confirms_anchor(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)

    m = lifecycle.anchor_document(
        db, batch_id=batch.id, document_hash="cd" * 32, document_type="GMP_CERT",
        visibility=None, session=MANUFACTURER_WALLET,
    )
    _, path, body = chain.calls[-2]
    assert path.endswith("/BuildTransactionWithMetadata")
    assert '"TRACE:DOC_ANCHOR:GMP_CERT"' in body["metadataJson"]

    lifecycle.submit_signed(db, signing_request_id=m.signing_request_id, signed_tx_cbor="a100")
    tx_hash = chain.confirm(sorted(chain.submissions)[-1])
    lifecycle.check_pending(db)

    db.expire_all()
    anchor = db.query(DocumentAnchor).filter(DocumentAnchor.batch_id == batch.id).one()
    assert anchor.status == SubmissionStatus.CONFIRMED.value
    assert anchor.onchain_tx_hash == tx_hash
    assert anchor.visibility == "PUBLIC"
    db.refresh(batch)
    assert batch.status == BatchStatus.DRAFT.value


def test_anchor_document_validation(db, lifecycle, chain):
    batch = create_batch(db)
    with pytest.raises(ValidationError):
        lifecycle.anchor_document(
            db, batch_id=batch.id, document_hash="", document_type="COA",
            visibility="PUBLIC", session=MANUFACTURER_WALLET,
        )
    with pytest.raises(ValidationError):
        lifecycle.anchor_document(
            db, batch_id=batch.id, document_hash="ab", document_type="COA",
            visibility="SECRET", session=MANUFACTURER_WALLET,
        )
    assert chain.calls == []


def test_recall_is_immediate(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)

    lifecycle.recall(db, batch_id=batch.id, reason="Contamination found in QA sample", session=MANUFACTURER_WALLET)

    _, _, body = chain.calls[-2]
    assert '"TRACE:RECALL:Contamination found in QA sample"' in body["metadataJson"]
    db.refresh(batch)
    assert batch.status == BatchStatus.RECALLED.value
    assert events_of(db, batch)[-1].payload_schema == "TRACE_RECALL_V1"


def test_recall_message_truncates_reason(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)

    lifecycle.recall(db, batch_id=batch.id, reason="x" * 100, session=MANUFACTURER_WALLET)
    _, _, body = chain.calls[-2]
    assert f'"TRACE:RECALL:{"x" * 60}"' in body["metadataJson"]


def test_recall_rules(db, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)

    with pytest.raises(ConflictError):
        lifecycle.recall(db, batch_id=batch.id, reason="bad", session=MANUFACTURER_WALLET)

    mint_and_confirm(lifecycle, db, chain, batch)
    with pytest.raises(ValidationError):
        lifecycle.recall(db, batch_id=batch.id, reason="   ", session=MANUFACTURER_WALLET)

    lifecycle.recall(db, batch_id=batch.id, reason="bad", session=MANUFACTURER_WALLET)
    with pytest.raises(ConflictError):
        lifecycle.recall(db, batch_id=batch.id, reason="bad again", session=MANUFACTURER_WALLET)

    with pytest.raises(ConflictError):
        lifecycle.mint(db, batch_id=batch.id, session=MANUFACTURER_WALLET)


def test_confirm_receipt(db, lifecycle, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)

    with pytest.raises(ConflictError):
        lifecycle.confirm_receipt(db, batch_id=batch.id)

    _, sub_id = transfer_and_submit(lifecycle, db, chain, batch, distributor, MANUFACTURER_WALLET)
    chain.confirm(sub_id)
    lifecycle.check_pending(db)
    calls_before = len(chain.calls)

    b = lifecycle.confirm_receipt(db, batch_id=batch.id)
    assert b.status == BatchStatus.DELIVERED.value
    assert b.confirmed_status == BatchStatus.DELIVERED.value
    assert len(chain.calls) == calls_before


def test_strict_holder_check_rejects_unknown_holder(db, adapter, settings, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    lenient = LifecycleService(adapter, settings)
    mint_and_confirm(lenient, db, chain, batch)

    asset = asset_of(db, batch)
    asset.current_holder_vkh = None
    db.commit()

    strict = LifecycleService(adapter, settings.model_copy(update={"strict_holder_check": True}))
    with pytest.raises(ForbiddenError):
        strict.transfer(
            db, batch_id=batch.id, to_participant_id=distributor.id,
            reason=None, notes=None, session=MANUFACTURER_WALLET,
        )

    lenient.transfer(
        db, batch_id=batch.id, to_participant_id=distributor.id,
        reason=None, notes=None, session=MANUFACTURER_WALLET,
    )


# ---------------------------
# CONCURRENT WRITERS
# ---------------------------

def test_mint_racing_another_mint_conflicts(db, session_factory, lifecycle, chain, monkeypatch):
    create_supply_chain(db)
    batch = create_batch(db)
    other = session_factory()
    real_build_mint = lifecycle.adapter.build_mint
    winner = []

    def build_mint_after_other_request(**kwargs):
        # the other request passes the same checks and commits first
        monkeypatch.setattr(lifecycle.adapter, "build_mint", real_build_mint)
        winner.append(lifecycle.mint(other, batch_id=batch.id, session=MANUFACTURER_WALLET))
        return real_build_mint(**kwargs)

    monkeypatch.setattr(lifecycle.adapter, "build_mint", build_mint_after_other_request)
    try:
        with pytest.raises(ConflictError):
            lifecycle.mint(db, batch_id=batch.id, session=MANUFACTURER_WALLET)
    finally:
        other.close()

    assert asset_of(db, batch).fingerprint == winner[0].fingerprint
    (evt,) = events_of(db, batch)
    assert evt.build_id == winner[0].build_id


def test_receipt_from_stale_batch_does_not_undo_recall(db, session_factory, lifecycle, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)
    transfer_and_submit(lifecycle, db, chain, batch, distributor, MANUFACTURER_WALLET)

    stale = session_factory()
    try:
        assert stale.get(Batch, batch.id).status == BatchStatus.IN_TRANSIT.value
        lifecycle.recall(db, batch_id=batch.id, reason="Contamination", session=MANUFACTURER_WALLET)

        with pytest.raises(ConflictError):
            lifecycle.confirm_receipt(stale, batch_id=batch.id)
    finally:
        stale.close()

    db.expire_all()
    assert db.get(Batch, batch.id).status == BatchStatus.RECALLED.value


def test_submit_from_stale_batch_keeps_recall(db, session_factory, lifecycle, chain):
    _, distributor, _ = create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)
    material = lifecycle.transfer(
        db, batch_id=batch.id, to_participant_id=distributor.id,
        reason=None, notes=None, session=MANUFACTURER_WALLET,
    )

    stale = session_factory()
    try:
        assert stale.get(Batch, batch.id).status == BatchStatus.MINTED.value
        lifecycle.recall(db, batch_id=batch.id, reason="Contamination", session=MANUFACTURER_WALLET)

        lifecycle.submit_signed(stale, signing_request_id=material.signing_request_id, signed_tx_cbor="a100witness")
    finally:
        stale.close()

    db.expire_all()
    assert db.get(Batch, batch.id).status == BatchStatus.RECALLED.value
    transfer = [e for e in events_of(db, batch) if e.event_type == ProofEventType.TRANSFER.value]
    assert transfer[0].status == SubmissionStatus.SUBMITTED.value


def test_second_recall_from_stale_batch_conflicts(db, session_factory, lifecycle, chain):
    create_supply_chain(db)
    batch = create_batch(db)
    mint_and_confirm(lifecycle, db, chain, batch)

    stale = session_factory()
    try:
        assert stale.get(Batch, batch.id).status == BatchStatus.MINTED.value
        lifecycle.recall(db, batch_id=batch.id, reason="Contamination", session=MANUFACTURER_WALLET)

        with pytest.raises(ConflictError):
            lifecycle.recall(stale, batch_id=batch.id, reason="Mislabelled", session=MANUFACTURER_WALLET)
    finally:
        stale.close()

    recalls = [e for e in events_of(db, batch) if e.event_type == ProofEventType.RECALL.value]
    assert len(recalls) == 1
    assert recalls[0].payload_digest == digest({"reason": "Contamination"})
