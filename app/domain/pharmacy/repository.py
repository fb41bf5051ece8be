"""
Pharmacy Repository Layer

Data access for drugs, drug batches, batch adjustments, prescriptions and
dispensed drugs. Repositories never commit; the service layer owns the
transaction boundary. Stock counters are only ever changed with SQL-side
arithmetic so concurrent writers cannot lose updates.
"""

from typing import Optional, List, Dict, Any, Tuple
from datetime import date

from sqlalchemy import select, update, delete, func, or_, asc, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.domain.pharmacy.filters import (
    DrugFilter, BatchFilter, DispensedDrugFilter,
    BatchSortField, DispensedSortField, SortOrder
)
from app.domain.pharmacy.models import (
    Drug, DrugBatch, DrugBatchAdjustment, Prescription, DispensedDrug,
    prescription_drugs
)


BATCH_DETAIL = (
    selectinload(DrugBatch.drug),
    selectinload(DrugBatch.adjustments),
)

DISPENSED_DETAIL = (
    selectinload(DispensedDrug.prescription).selectinload(Prescription.drugs),
    selectinload(DispensedDrug.batch).selectinload(DrugBatch.drug),
    selectinload(DispensedDrug.drug),
)

_BATCH_SORT_COLUMNS = {
    BatchSortField.EXPIRY_DATE: DrugBatch.expiry_date,
    BatchSortField.MANUFACTURING_DATE: DrugBatch.manufacturing_date,
    BatchSortField.QUANTITY: DrugBatch.quantity,
}

_DISPENSED_SORT_COLUMNS = {
    DispensedSortField.DISPENSE_DATE: DispensedDrug.dispense_date,
    DispensedSortField.QUANTITY_DISPENSED: DispensedDrug.quantity_dispensed,
}


def _ordering(column, order: SortOrder):
    return desc(column) if order == SortOrder.DESC else asc(column)


class DrugRepository:
    """Repository for drug master data and the aggregate stock counter"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, drug_data: dict) -> Drug:
        drug = Drug(**drug_data)
        self.db.add(drug)
        await self.db.flush()
        return drug

    async def get_by_id(
        self,
        drug_id: str,
        with_batches: bool = False,
        for_update: bool = False
    ) -> Optional[Drug]:
        query = select(Drug).where(Drug.id == drug_id).execution_options(populate_existing=True)
        if with_batches:
            query = query.options(selectinload(Drug.batches))
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_all(self, filters: DrugFilter) -> List[Drug]:
        query = select(Drug)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(or_(Drug.name.ilike(pattern), Drug.description.ilike(pattern)))
        if filters.category:
            query = query.where(Drug.category == filters.category)
        if filters.in_stock is not None:
            if filters.in_stock:
                query = query.where(Drug.stock_quantity > 0)
            else:
                query = query.where(Drug.stock_quantity == 0)
        result = await self.db.execute(
            query.order_by(Drug.name.asc()).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_many(self, drug_ids: List[str]) -> List[Drug]:
        if not drug_ids:
            return []
        result = await self.db.execute(
            select(Drug).where(Drug.id.in_(drug_ids)).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_all_with_batches(self) -> List[Drug]:
        result = await self.db.execute(
            select(Drug)
            .options(selectinload(Drug.batches))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def update(self, drug: Drug, update_data: dict) -> Drug:
        for key, value in update_data.items():
            setattr(drug, key, value)
        await self.db.flush()
        return drug

    async def delete(self, drug_id: str) -> None:
        await self.db.execute(delete(Drug).where(Drug.id == drug_id))

    async def count_references(self, drug_id: str) -> Dict[str, int]:
        """Rows in other tables that point at the drug, by kind"""
        sources = {
            "batches": (DrugBatch.id, DrugBatch.drug_id),
            "adjustments": (DrugBatchAdjustment.id, DrugBatchAdjustment.drug_id),
            "dispensed": (DispensedDrug.id, DispensedDrug.drug_id),
            "prescriptions": (prescription_drugs.c.prescription_id, prescription_drugs.c.drug_id),
        }
        counts = {}
        for kind, (key, column) in sources.items():
            result = await self.db.execute(select(func.count(key)).where(column == drug_id))
            counts[kind] = result.scalar_one()
        return counts

    async def apply_stock_delta(self, drug_id: str, delta: int) -> None:
        """Add delta to the drug's aggregate stock in the database"""
        await self.db.execute(
            update(Drug)
            .where(Drug.id == drug_id)
            .values(stock_quantity=Drug.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )

    async def set_stock(self, drug_id: str, quantity: int) -> None:
        await self.db.execute(
            update(Drug)
            .where(Drug.id == drug_id)
            .values(stock_quantity=quantity)
            .execution_options(synchronize_session=False)
        )

    async def batch_total(self, drug_id: str) -> int:
        """Live sum of the drug's batch quantities"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(DrugBatch.quantity), 0)).where(DrugBatch.drug_id == drug_id)
        )
        return int(result.scalar_one())

    async def categories(self) -> List[str]:
        result = await self.db.execute(
            select(Drug.category)
            .where(Drug.category.is_not(None))
            .distinct()
            .order_by(Drug.category)
        )
        return list(result.scalars().all())

    async def get_low_stock(self) -> List[Drug]:
        result = await self.db.execute(
            select(Drug)
            .where(Drug.stock_quantity <= Drug.reorder_level)
            .order_by(Drug.stock_quantity.asc(), Drug.name.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_expiring(self, horizon: date) -> List[Drug]:
        """Drugs owning at least one batch that expires on or before horizon.

        Only the expiring batches are loaded on each drug.
        """
        result = await self.db.execute(
            select(Drug)
            .where(Drug.batches.any(DrugBatch.expiry_date <= horizon))
            .options(selectinload(Drug.batches.and_(DrugBatch.expiry_date <= horizon)))
            .order_by(Drug.name.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


class DrugBatchRepository:
    """Repository for drug batches and their adjustment audit trail"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, batch_data: dict) -> DrugBatch:
        batch = DrugBatch(**batch_data)
        self.db.add(batch)
        await self.db.flush()
        return batch

    async def get_by_id(
        self,
        batch_id: str,
        with_details: bool = False,
        for_update: bool = False
    ) -> Optional[DrugBatch]:
        query = select(DrugBatch).where(DrugBatch.id == batch_id).execution_options(populate_existing=True)
        if with_details:
            query = query.options(*BATCH_DETAIL)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_batch_number(self, batch_number: str) -> Optional[DrugBatch]:
        result = await self.db.execute(
            select(DrugBatch).where(DrugBatch.batch_number == batch_number)
        )
        return result.scalar_one_or_none()

    async def get_all(self, filters: BatchFilter, expiring_horizon: Optional[date] = None) -> List[DrugBatch]:
        """Get batches matching the filter.

        expiring_horizon is only used when filters.expiring_soon is set.
        """
        query = select(DrugBatch).join(DrugBatch.drug).options(*BATCH_DETAIL)

        if filters.drug_id:
            query = query.where(DrugBatch.drug_id == filters.drug_id)
        if filters.expiring_soon and expiring_horizon:
            query = query.where(DrugBatch.expiry_date <= expiring_horizon)
        if filters.start_date:
            query = query.where(DrugBatch.manufacturing_date >= filters.start_date)
        if filters.end_date:
            query = query.where(DrugBatch.manufacturing_date <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(or_(DrugBatch.batch_number.ilike(pattern), Drug.name.ilike(pattern)))
        if filters.supplier:
            query = query.where(DrugBatch.supplier.ilike(f"%{filters.supplier}%"))

        query = query.order_by(
            _ordering(_BATCH_SORT_COLUMNS[filters.sort_by], filters.sort_order),
            DrugBatch.batch_number.asc()
        )
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_all_with_drug(self) -> List[DrugBatch]:
        result = await self.db.execute(
            select(DrugBatch)
            .options(selectinload(DrugBatch.drug))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_expiring(self, horizon: date) -> List[DrugBatch]:
        result = await self.db.execute(
            select(DrugBatch)
            .where(DrugBatch.expiry_date <= horizon)
            .options(selectinload(DrugBatch.drug))
            .order_by(DrugBatch.expiry_date.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_by_drug(self, drug_id: str) -> List[DrugBatch]:
        result = await self.db.execute(
            select(DrugBatch)
            .where(DrugBatch.drug_id == drug_id)
            .options(*BATCH_DETAIL)
            .order_by(DrugBatch.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_for_low_stock_drugs(self) -> List[DrugBatch]:
        result = await self.db.execute(
            select(DrugBatch)
            .join(DrugBatch.drug)
            .where(Drug.stock_quantity <= Drug.reorder_level)
            .options(selectinload(DrugBatch.drug))
            .order_by(Drug.name.asc(), DrugBatch.expiry_date.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def update(self, batch: DrugBatch, update_data: dict) -> DrugBatch:
        for key, value in update_data.items():
            setattr(batch, key, value)
        await self.db.flush()
        return batch

    async def set_quantity(self, batch_id: str, quantity: int) -> None:
        await self.db.execute(
            update(DrugBatch)
            .where(DrugBatch.id == batch_id)
            .values(quantity=quantity)
            .execution_options(synchronize_session=False)
        )

    async def increment(self, batch_id: str, amount: int) -> None:
        await self.db.execute(
            update(DrugBatch)
            .where(DrugBatch.id == batch_id)
            .values(quantity=DrugBatch.quantity + amount)
            .execution_options(synchronize_session=False)
        )

    async def reserve(self, batch_id: str, amount: int) -> bool:
        """Decrement the batch only if it still holds at least amount units.

        Returns False when the guarded update matched no row, i.e. stock was
        insufficient at the moment of the write.
        """
        result = await self.db.execute(
            update(DrugBatch)
            .where(DrugBatch.id == batch_id, DrugBatch.quantity >= amount)
            .values(quantity=DrugBatch.quantity - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def detach_and_delete(self, batch_id: str) -> None:
        """Delete a batch, keeping its dispensing and audit rows unlinked"""
        await self.db.execute(
            update(DrugBatchAdjustment)
            .where(DrugBatchAdjustment.drug_batch_id == batch_id)
            .values(drug_batch_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(DispensedDrug)
            .where(DispensedDrug.batch_id == batch_id)
            .values(batch_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(DrugBatch)
            .where(DrugBatch.id == batch_id)
            .execution_options(synchronize_session=False)
        )

    async def add_adjustment(self, adjustment_data: dict) -> DrugBatchAdjustment:
        adjustment = DrugBatchAdjustment(**adjustment_data)
        self.db.add(adjustment)
        await self.db.flush()
        return adjustment


class PrescriptionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, prescription_data: dict, drugs: List[Drug]) -> Prescription:
        prescription = Prescription(**prescription_data)
        prescription.drugs = drugs
        self.db.add(prescription)
        await self.db.flush()
        return prescription

    async def get_by_id(self, prescription_id: str, with_drugs: bool = True) -> Optional[Prescription]:
        query = select(Prescription).where(Prescription.id == prescription_id)
        if with_drugs:
            query = query.options(selectinload(Prescription.drugs))
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_all(self, patient_id: Optional[str] = None, limit: int = 100) -> List[Prescription]:
        query = select(Prescription).options(selectinload(Prescription.drugs))
        if patient_id:
            query = query.where(Prescription.patient_id == patient_id)
        result = await self.db.execute(
            query.order_by(Prescription.prescription_date.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


class DispensedDrugRepository:
    """Repository for dispensing events"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, dispensed_data: dict) -> DispensedDrug:
        dispensed = DispensedDrug(**dispensed_data)
        self.db.add(dispensed)
        await self.db.flush()
        return dispensed

    async def get_by_id(
        self,
        dispensed_id: str,
        with_details: bool = False,
        for_update: bool = False
    ) -> Optional[DispensedDrug]:
        query = select(DispensedDrug).where(DispensedDrug.id == dispensed_id).execution_options(populate_existing=True)
        if with_details:
            query = query.options(*DISPENSED_DETAIL)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_all(self, filters: DispensedDrugFilter) -> List[DispensedDrug]:
        query = select(DispensedDrug).options(*DISPENSED_DETAIL)

        if filters.prescription_id:
            query = query.where(DispensedDrug.prescription_id == filters.prescription_id)
        if filters.patient_id:
            query = query.where(DispensedDrug.patient_id == filters.patient_id)
        if filters.drug_id:
            query = query.where(DispensedDrug.drug_id == filters.drug_id)
        if filters.start_date:
            query = query.where(func.date(DispensedDrug.dispense_date) >= filters.start_date)
        if filters.end_date:
            query = query.where(func.date(DispensedDrug.dispense_date) <= filters.end_date)

        query = query.order_by(
            _ordering(_DISPENSED_SORT_COLUMNS[filters.sort_by], filters.sort_order)
        )
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def set_quantity(self, dispensed_id: str, quantity: int, notes: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"quantity_dispensed": quantity}
        if notes is not None:
            values["notes"] = notes
        await self.db.execute(
            update(DispensedDrug)
            .where(DispensedDrug.id == dispensed_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def set_notes(self, dispensed_id: str, notes: str) -> None:
        await self.db.execute(
            update(DispensedDrug)
            .where(DispensedDrug.id == dispensed_id)
            .values(notes=notes)
            .execution_options(synchronize_session=False)
        )

    async def delete(self, dispensed_id: str) -> None:
        await self.db.execute(
            delete(DispensedDrug)
            .where(DispensedDrug.id == dispensed_id)
            .execution_options(synchronize_session=False)
        )

    async def count(self) -> int:
        result = await self.db.execute(select(func.count(DispensedDrug.id)))
        return result.scalar_one()

    async def totals_by_drug(self) -> List[Tuple[str, int, int]]:
        """(drug_id, total quantity dispensed, record count) per drug"""
        result = await self.db.execute(
            select(
                DispensedDrug.drug_id,
                func.coalesce(func.sum(DispensedDrug.quantity_dispensed), 0),
                func.count(DispensedDrug.id)
            )
            .group_by(DispensedDrug.drug_id)
        )
        return [(row[0], int(row[1]), int(row[2])) for row in result.all()]

    async def get_recent(self, limit: int = 5) -> List[DispensedDrug]:
        result = await self.db.execute(
            select(DispensedDrug)
            .options(*DISPENSED_DETAIL)
            .order_by(DispensedDrug.dispense_date.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
