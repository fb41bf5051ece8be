import pytest
from datetime import date, timedelta

from app.core.exceptions import (
    NotFoundError, BusinessLogicError, DuplicateBatchNumberError, InvalidQuantityError,
    StockInconsistencyError
)
from app.domain.pharmacy.filters import BatchFilter, BatchSortField, SortOrder
from app.domain.pharmacy.service import DrugService, DrugBatchService, BATCH_UPDATE_REASON


pytestmark = [pytest.mark.inventory]


async def _stock(drug_service: DrugService, drug_id: str) -> int:
    return (await drug_service.get_drug(drug_id)).stock_quantity


async def test_create_batch_increments_drug_stock(drug_service, batch_service, drug, batch_dates):
    """Test creating a batch adds its quantity to the drug"""
    assert drug.stock_quantity == 0

    batch = await batch_service.create_batch(
        drug_id=drug.id, batch_number="B1", quantity=100, unit_cost=0.35, **batch_dates
    )

    assert batch.quantity == 100
    assert batch.drug.id == drug.id
    assert batch.drug.stock_quantity == 100
    assert batch.adjustments == []
    assert await _stock(drug_service, drug.id) == 100


async def test_create_batch_missing_drug(batch_service, batch_dates):
    with pytest.raises(NotFoundError):
        await batch_service.create_batch(
            drug_id="missing", batch_number="B1", quantity=10, unit_cost=1, **batch_dates
        )


async def test_create_batch_duplicate_number_leaves_stock(drug_service, batch_service, drug, batch, batch_dates):
    """Test a reused batch number is rejected without touching stock"""
    drug_id = drug.id
    with pytest.raises(DuplicateBatchNumberError):
        await batch_service.create_batch(
            drug_id=drug.id, batch_number="B1", quantity=50, unit_cost=1, **batch_dates
        )

    assert await _stock(drug_service, drug_id) == 100
    batches = await batch_service.list_batches()
    assert len(batches) == 1


async def test_create_batch_negative_quantity(batch_service, drug, batch_dates):
    with pytest.raises(InvalidQuantityError):
        await batch_service.create_batch(
            drug_id=drug.id, batch_number="NEG", quantity=-1, unit_cost=1, **batch_dates
        )


async def test_adjust_quantity_records_audit_row(drug_service, batch_service, drug, batch):
    """Test adjustment updates batch and drug and writes one audit row"""
    adjusted = await batch_service.adjust_quantity(batch.id, 80, "stock count", adjusted_by="pharm-1")

    assert adjusted.quantity == 80
    assert adjusted.drug.stock_quantity == 80
    assert len(adjusted.adjustments) == 1
    audit = adjusted.adjustments[0]
    assert audit.previous_quantity == 100
    assert audit.new_quantity == 80
    assert audit.reason == "stock count"
    assert audit.adjusted_by == "pharm-1"

    adjusted = await batch_service.adjust_quantity(batch.id, 90, "found a box")
    assert len(adjusted.adjustments) == 2
    assert adjusted.adjustments[0].previous_quantity == 80
    assert await _stock(drug_service, drug.id) == 90


async def test_adjust_quantity_rejects_negative(drug_service, batch_service, drug, batch):
    with pytest.raises(InvalidQuantityError):
        await batch_service.adjust_quantity(batch.id, -5, "typo")

    reloaded = await batch_service.get_batch(batch.id)
    assert reloaded.quantity == 100
    assert reloaded.adjustments == []
    assert await _stock(drug_service, drug.id) == 100


async def test_adjust_quantity_missing_batch(batch_service):
    with pytest.raises(NotFoundError):
        await batch_service.adjust_quantity("missing", 1, "n/a")


async def test_update_batch_quantity_is_audited(drug_service, batch_service, drug, batch):
    """Test editing quantity through update goes through an adjustment"""
    updated = await batch_service.update_batch(batch.id, {"quantity": 60, "supplier": "Other Co"})

    assert updated.quantity == 60
    assert updated.supplier == "Other Co"
    assert len(updated.adjustments) == 1
    assert updated.adjustments[0].reason == BATCH_UPDATE_REASON
    assert await _stock(drug_service, drug.id) == 60


async def test_update_batch_duplicate_number(batch_service, drug, batch, batch_dates):
    other = await batch_service.create_batch(
        drug_id=drug.id, batch_number="B2", quantity=5, unit_cost=1, **batch_dates
    )
    with pytest.raises(DuplicateBatchNumberError):
        await batch_service.update_batch(other.id, {"batch_number": "B1"})


async def test_remove_batch_decrements_stock(drug_service, batch_service, drug, batch, batch_dates):
    await batch_service.create_batch(
        drug_id=drug.id, batch_number="B2", quantity=30, unit_cost=1, **batch_dates
    )
    assert await _stock(drug_service, drug.id) == 130

    await batch_service.remove_batch(batch.id)

    assert await _stock(drug_service, drug.id) == 30
    with pytest.raises(NotFoundError):
        await batch_service.get_batch(batch.id)


async def test_remove_batch_keeps_adjustment_history(db_session, batch_service, drug, batch):
    from sqlalchemy import select
    from app.domain.pharmacy.models import DrugBatchAdjustment

    await batch_service.adjust_quantity(batch.id, 40, "damaged")
    await batch_service.remove_batch(batch.id)

    result = await db_session.execute(
        select(DrugBatchAdjustment).execution_options(populate_existing=True)
    )
    rows = result.scalars().all()
    assert len(rows) == 1
    assert rows[0].drug_batch_id is None
    assert rows[0].drug_id == drug.id


async def test_remove_batch_refuses_negative_aggregate(drug_service, batch_service, drug, batch):
    """Test removal is rejected when the drug counter has drifted below the batch"""
    drug_id, batch_id = drug.id, batch.id
    await drug_service.drug_repo.set_stock(drug_id, 10)
    await drug_service.db.commit()

    with pytest.raises(StockInconsistencyError):
        await batch_service.remove_batch(batch_id)

    assert (await batch_service.get_batch(batch_id)).quantity == 100
    assert await _stock(drug_service, drug_id) == 10


async def test_remove_missing_batch(batch_service):
    with pytest.raises(NotFoundError):
        await batch_service.remove_batch("missing")


async def test_list_batches_filters_and_sorting(batch_service, drug_service, drug, sample_drug_data):
    today = date.today()
    other = await drug_service.create_drug({**sample_drug_data, "name": "Paracetamol", "category": "Analgesic"})

    await batch_service.create_batch(
        drug_id=drug.id, batch_number="AMX-001", quantity=10, unit_cost=1,
        manufacturing_date=today - timedelta(days=300), expiry_date=today + timedelta(days=10),
        supplier="North Supply"
    )
    await batch_service.create_batch(
        drug_id=drug.id, batch_number="AMX-002", quantity=50, unit_cost=1,
        manufacturing_date=today - timedelta(days=30), expiry_date=today + timedelta(days=400),
        supplier="South Supply"
    )
    await batch_service.create_batch(
        drug_id=other.id, batch_number="PCM-001", quantity=5, unit_cost=1,
        manufacturing_date=today - timedelta(days=100), expiry_date=today + timedelta(days=200),
        supplier="North Supply"
    )

    all_batches = await batch_service.list_batches()
    assert [b.batch_number for b in all_batches] == ["AMX-001", "PCM-001", "AMX-002"]

    by_drug = await batch_service.list_batches(BatchFilter(drug_id=other.id))
    assert [b.batch_number for b in by_drug] == ["PCM-001"]

    expiring = await batch_service.list_batches(BatchFilter(expiring_soon=True))
    assert [b.batch_number for b in expiring] == ["AMX-001"]

    by_supplier = await batch_service.list_batches(BatchFilter(supplier="north"))
    assert {b.batch_number for b in by_supplier} == {"AMX-001", "PCM-001"}

    by_name = await batch_service.list_batches(BatchFilter(search="paracet"))
    assert [b.batch_number for b in by_name] == ["PCM-001"]

    manufactured = await batch_service.list_batches(
        BatchFilter(start_date=today - timedelta(days=120), end_date=today)
    )
    assert {b.batch_number for b in manufactured} == {"AMX-002", "PCM-001"}

    by_quantity = await batch_service.list_batches(
        BatchFilter(sort_by=BatchSortField.QUANTITY, sort_order=SortOrder.DESC)
    )
    assert [b.quantity for b in by_quantity] == [50, 10, 5]


async def test_expiration_stats(batch_service, drug):
    today = date.today()
    for number, days, qty in [("EXP", -1, 4), ("SOON", 15, 6), ("LATER", 60, 8), ("FAR", 400, 10)]:
        await batch_service.create_batch(
            drug_id=drug.id, batch_number=number, quantity=qty, unit_cost=1,
            manufacturing_date=today - timedelta(days=500), expiry_date=today + timedelta(days=days)
        )

    stats = await batch_service.get_expiration_stats()

    assert stats["total_batches"] == 4
    assert stats["expired_batches"] == 1
    assert stats["expiring_soon_batches"] == 1
    assert stats["expiring_later_batches"] == 1
    assert stats["total_quantity"] == 28
    assert stats["expired_quantity"] == 4
    assert stats["expiring_soon_quantity"] == 6
    assert stats["by_drug"] == [{
        "drug_id": drug.id,
        "drug_name": drug.name,
        "total_batches": 4,
        "total_quantity": 28,
        "expiring_soon": 1,
        "expired": 1,
    }]

    expiring = await batch_service.get_expiring_soon_batches()
    assert [b.batch_number for b in expiring] == ["EXP", "SOON"]


async def test_low_stock_uses_drug_aggregate(batch_service, drug, batch_dates):
    """Test low stock is decided on the drug total, not per batch"""
    # Two small batches, each under the reorder level of 20, total above it
    await batch_service.create_batch(drug_id=drug.id, batch_number="S1", quantity=15, unit_cost=1, **batch_dates)
    await batch_service.create_batch(drug_id=drug.id, batch_number="S2", quantity=15, unit_cost=1, **batch_dates)
    assert await batch_service.get_low_stock_batches() == []

    s1 = (await batch_service.list_batches(BatchFilter(search="S1")))[0]
    await batch_service.adjust_quantity(s1.id, 0, "expired stock destroyed")

    low = await batch_service.get_low_stock_batches()
    assert {b.batch_number for b in low} == {"S1", "S2"}


async def test_drug_batch_history(batch_service, drug, batch):
    await batch_service.adjust_quantity(batch.id, 99, "one broken")

    history = await batch_service.get_drug_batch_history(drug.id)
    assert len(history) == 1
    assert history[0].adjustments[0].new_quantity == 99

    with pytest.raises(NotFoundError):
        await batch_service.get_drug_batch_history("missing")


async def test_update_batch_rejects_clearing_required_fields(drug_service, batch_service, drug, batch):
    drug_id, batch_id = drug.id, batch.id

    for field in ("batch_number", "manufacturing_date", "expiry_date", "unit_cost"):
        with pytest.raises(BusinessLogicError) as exc_info:
            await batch_service.update_batch(batch_id, {field: None})
        assert exc_info.value.error_code == "REQUIRED_FIELD_CLEARED"
        assert exc_info.value.details["fields"] == [field]

    reloaded = await batch_service.get_batch(batch_id)
    assert reloaded.batch_number == "B1"
    assert reloaded.expiry_date is not None

    updated = await batch_service.update_batch(batch_id, {"supplier": None, "notes": None})
    assert updated.supplier is None
    assert await _stock(drug_service, drug_id) == 100


async def test_update_batch_rejects_expiry_before_manufacturing(batch_service, batch):
    batch_id = batch.id
    manufactured = batch.manufacturing_date
    expiry = batch.expiry_date

    with pytest.raises(BusinessLogicError) as exc_info:
        await batch_service.update_batch(batch_id, {"expiry_date": manufactured - timedelta(days=1)})
    assert exc_info.value.error_code == "INVALID_DATE_RANGE"

    with pytest.raises(BusinessLogicError):
        await batch_service.update_batch(batch_id, {"manufacturing_date": expiry + timedelta(days=1)})

    reloaded = await batch_service.get_batch(batch_id)
    assert reloaded.expiry_date == expiry
    assert reloaded.manufacturing_date == manufactured

    # Moving both together is checked against the merged values
    updated = await batch_service.update_batch(batch_id, {
        "manufacturing_date": expiry + timedelta(days=1),
        "expiry_date": expiry + timedelta(days=400),
    })
    assert updated.expiry_date == expiry + timedelta(days=400)
