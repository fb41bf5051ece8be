import pytest

from app.core.exceptions import (
    NotFoundError, BusinessLogicError, InsufficientStockError,
    InvalidQuantityError, DrugNotPrescribedError
)
from app.domain.pharmacy.models import PrescriptionStatus


pytestmark = [pytest.mark.dispensing]


async def _levels(drug_service, batch_service, drug_id, batch_id):
    """(drug stock, batch quantity)"""
    drug = await drug_service.get_drug(drug_id)
    batch = await batch_service.get_batch(batch_id)
    return drug.stock_quantity, batch.quantity


async def _assert_consistent(drug_service, drug_id):
    report = await drug_service.check_stock_consistency(drug_id)
    assert report["consistent"], report


async def test_dispense_decrements_batch_and_drug(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    dispensed = await dispensed_service.dispense(
        prescription.id, batch.id, 30, dispensed_by="pharm-1", notes="first fill"
    )

    assert dispensed.quantity_dispensed == 30
    assert dispensed.drug_id == drug.id
    assert dispensed.patient_id == "patient-001"
    assert dispensed.dispensed_by_id == "pharm-1"
    assert dispensed.prescription.id == prescription.id
    assert dispensed.batch.batch_number == "B1"
    assert dispensed.drug.name == drug.name
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (70, 70)
    await _assert_consistent(drug_service, drug.id)


async def test_dispense_insufficient_stock_leaves_state(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    drug_id, batch_id = drug.id, batch.id

    with pytest.raises(InsufficientStockError) as exc_info:
        await dispensed_service.dispense(prescription.id, batch_id, 101, dispensed_by="pharm-1")

    assert exc_info.value.details["available"] == 100
    assert await _levels(drug_service, batch_service, drug_id, batch_id) == (100, 100)
    assert await dispensed_service.list_dispensed() == []


async def test_dispense_exact_remaining_depletes_batch(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    await dispensed_service.dispense(prescription.id, batch.id, 100, dispensed_by="pharm-1")

    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (0, 0)
    # Depleted batches stay queryable
    assert (await batch_service.get_batch(batch.id)).quantity == 0


async def test_dispense_missing_references(dispensed_service, batch, prescription):
    prescription_id, batch_id = prescription.id, batch.id

    with pytest.raises(NotFoundError):
        await dispensed_service.dispense("missing", batch_id, 1, dispensed_by="pharm-1")
    with pytest.raises(NotFoundError):
        await dispensed_service.dispense(prescription_id, "missing", 1, dispensed_by="pharm-1")


async def test_dispense_rejects_non_positive_quantity(dispensed_service, batch, prescription):
    with pytest.raises(InvalidQuantityError):
        await dispensed_service.dispense(prescription.id, batch.id, 0, dispensed_by="pharm-1")


async def test_dispense_drug_not_prescribed(
    drug_service, batch_service, prescription_service, dispensed_service,
    drug, batch, sample_drug_data, batch_dates
):
    other = await drug_service.create_drug({**sample_drug_data, "name": "Ibuprofen"})
    other_batch = await batch_service.create_batch(
        drug_id=other.id, batch_number="IBU-1", quantity=10, unit_cost=1, **batch_dates
    )
    prescription = await prescription_service.create_prescription({
        "patient_id": "patient-002",
        "prescribed_by_id": "doctor-001",
        "drug_ids": [drug.id],
    })
    other_id, other_batch_id = other.id, other_batch.id

    with pytest.raises(DrugNotPrescribedError):
        await dispensed_service.dispense(prescription.id, other_batch_id, 1, dispensed_by="pharm-1")
    assert await _levels(drug_service, batch_service, other_id, other_batch_id) == (10, 10)

    # A prescription without explicit items accepts any drug
    open_prescription = await prescription_service.create_prescription({
        "patient_id": "patient-002",
        "prescribed_by_id": "doctor-001",
    })
    dispensed = await dispensed_service.dispense(open_prescription.id, other_batch_id, 1, dispensed_by="pharm-1")
    assert dispensed.drug_id == other_id


async def test_dispense_cancelled_prescription(prescription_service, dispensed_service, drug, batch):
    prescription = await prescription_service.create_prescription({
        "patient_id": "patient-003",
        "prescribed_by_id": "doctor-001",
        "drug_ids": [drug.id],
        "status": PrescriptionStatus.CANCELLED,
    })
    with pytest.raises(BusinessLogicError):
        await dispensed_service.dispense(prescription.id, batch.id, 1, dispensed_by="pharm-1")


async def test_update_dispensed_quantity_moves_stock(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    dispensed = await dispensed_service.dispense(prescription.id, batch.id, 30, dispensed_by="pharm-1")

    updated = await dispensed_service.update_dispensed(dispensed.id, quantity=40)
    assert updated.quantity_dispensed == 40
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (60, 60)

    updated = await dispensed_service.update_dispensed(dispensed.id, quantity=10, notes="partial return")
    assert updated.quantity_dispensed == 10
    assert updated.notes == "partial return"
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (90, 90)
    await _assert_consistent(drug_service, drug.id)


async def test_update_dispensed_rechecks_stock(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    dispensed = await dispensed_service.dispense(prescription.id, batch.id, 30, dispensed_by="pharm-1")
    dispensed_id, drug_id, batch_id = dispensed.id, drug.id, batch.id

    with pytest.raises(InsufficientStockError):
        await dispensed_service.update_dispensed(dispensed_id, quantity=101)

    assert (await dispensed_service.get_dispensed(dispensed_id)).quantity_dispensed == 30
    assert await _levels(drug_service, batch_service, drug_id, batch_id) == (70, 70)


async def test_update_dispensed_notes_only(dispensed_service, batch, prescription):
    dispensed = await dispensed_service.dispense(prescription.id, batch.id, 5, dispensed_by="pharm-1")
    updated = await dispensed_service.update_dispensed(dispensed.id, notes="label reprinted")
    assert updated.notes == "label reprinted"
    assert updated.quantity_dispensed == 5


async def test_update_missing_dispensed(dispensed_service):
    with pytest.raises(NotFoundError):
        await dispensed_service.update_dispensed("missing", quantity=1)


async def test_reverse_then_redispense_round_trip(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    dispensed = await dispensed_service.dispense(prescription.id, batch.id, 25, dispensed_by="pharm-1")
    before = await _levels(drug_service, batch_service, drug.id, batch.id)

    await dispensed_service.reverse_dispensed(dispensed.id)
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (100, 100)
    with pytest.raises(NotFoundError):
        await dispensed_service.get_dispensed(dispensed.id)

    await dispensed_service.dispense(prescription.id, batch.id, 25, dispensed_by="pharm-1")
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == before


async def test_reverse_after_batch_removed(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    dispensed = await dispensed_service.dispense(prescription.id, batch.id, 20, dispensed_by="pharm-1")
    await batch_service.remove_batch(batch.id)
    assert (await drug_service.get_drug(drug.id)).stock_quantity == 0

    orphan = await dispensed_service.get_dispensed(dispensed.id)
    assert orphan.batch_id is None

    await dispensed_service.reverse_dispensed(dispensed.id)
    assert (await drug_service.get_drug(drug.id)).stock_quantity == 0
    await _assert_consistent(drug_service, drug.id)


async def test_reverse_missing_dispensed(dispensed_service):
    with pytest.raises(NotFoundError):
        await dispensed_service.reverse_dispensed("missing")


async def test_ledger_example_scenario(
    drug_service, batch_service, dispensed_service, drug, prescription, batch_dates
):
    """Create, dispense, adjust and an over-dispense on a single batch"""
    batch = await batch_service.create_batch(
        drug_id=drug.id, batch_number="B1", quantity=100, unit_cost=1, **batch_dates
    )
    drug_id, batch_id = drug.id, batch.id
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (100, 100)

    await dispensed_service.dispense(prescription.id, batch.id, 30, dispensed_by="pharm-1")
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (70, 70)

    adjusted = await batch_service.adjust_quantity(batch.id, 50, "damaged")
    assert len(adjusted.adjustments) == 1
    audit = adjusted.adjustments[0]
    assert (audit.previous_quantity, audit.new_quantity, audit.reason) == (70, 50, "damaged")
    assert await _levels(drug_service, batch_service, drug.id, batch.id) == (50, 50)

    with pytest.raises(InsufficientStockError):
        await dispensed_service.dispense(prescription.id, batch.id, 60, dispensed_by="pharm-1")
    assert await _levels(drug_service, batch_service, drug_id, batch_id) == (50, 50)


async def test_aggregate_matches_batches_over_mixed_operations(
    drug_service, batch_service, dispensed_service, drug, prescription, batch_dates
):
    b1 = await batch_service.create_batch(drug_id=drug.id, batch_number="M1", quantity=40, unit_cost=1, **batch_dates)
    b2 = await batch_service.create_batch(drug_id=drug.id, batch_number="M2", quantity=25, unit_cost=1, **batch_dates)
    await _assert_consistent(drug_service, drug.id)

    d1 = await dispensed_service.dispense(prescription.id, b1.id, 15, dispensed_by="pharm-1")
    await _assert_consistent(drug_service, drug.id)

    await batch_service.adjust_quantity(b2.id, 30, "recount")
    await _assert_consistent(drug_service, drug.id)

    await dispensed_service.update_dispensed(d1.id, quantity=20)
    await _assert_consistent(drug_service, drug.id)

    await dispensed_service.dispense(prescription.id, b2.id, 30, dispensed_by="pharm-1")
    await _assert_consistent(drug_service, drug.id)

    await batch_service.remove_batch(b1.id)
    await _assert_consistent(drug_service, drug.id)

    assert (await drug_service.get_drug(drug.id)).stock_quantity == 0


async def test_dispensing_stats_and_lookups(
    drug_service, batch_service, dispensed_service, drug, batch, prescription
):
    for quantity in (5, 10, 15):
        await dispensed_service.dispense(prescription.id, batch.id, quantity, dispensed_by="pharm-1")

    stats = await dispensed_service.get_stats()
    assert stats["total_dispensed"] == 3
    assert len(stats["drug_stats"]) == 1
    assert stats["drug_stats"][0]["drug"].id == drug.id
    assert stats["drug_stats"][0]["total_dispensed"] == 30
    assert stats["drug_stats"][0]["count"] == 3
    assert sorted(d.quantity_dispensed for d in stats["recent_dispensed"]) == [5, 10, 15]

    by_prescription = await dispensed_service.get_prescription_dispensed(prescription.id)
    assert len(by_prescription) == 3
    by_patient = await dispensed_service.get_patient_dispensed("patient-001")
    assert len(by_patient) == 3
    assert await dispensed_service.get_patient_dispensed("nobody") == []

    with pytest.raises(NotFoundError):
        await dispensed_service.get_prescription_dispensed("missing")


async def test_guarded_decrement_refuses_over_amount(batch_service, dispensed_service, batch):
    repo = dispensed_service.batch_repo

    assert await repo.reserve(batch.id, 101) is False
    assert (await batch_service.get_batch(batch.id)).quantity == 100

    assert await repo.reserve(batch.id, 100) is True
    assert (await batch_service.get_batch(batch.id)).quantity == 0
    await dispensed_service.db.rollback()


async def test_dispense_loses_race_against_concurrent_drain(
    drug_service, batch_service, dispensed_service, drug, batch, prescription, monkeypatch
):
    """Test the guarded decrement decides when the loaded batch is stale"""
    repo = dispensed_service.batch_repo
    original_get = repo.get_by_id

    async def get_then_drain(batch_id, **kwargs):
        loaded = await original_get(batch_id, **kwargs)
        # Another writer takes most of the batch after the read
        await repo.set_quantity(batch_id, 5)
        return loaded

    monkeypatch.setattr(repo, "get_by_id", get_then_drain)
    drug_id, batch_id = drug.id, batch.id

    with pytest.raises(InsufficientStockError) as exc_info:
        await dispensed_service.dispense(prescription.id, batch_id, 30, dispensed_by="pharm-1")

    assert exc_info.value.details["requested"] == 30
    assert await _levels(drug_service, batch_service, drug_id, batch_id) == (100, 100)
    assert await dispensed_service.list_dispensed() == []
