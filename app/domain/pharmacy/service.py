"""
Pharmacy Service Layer

Business logic for the drug inventory ledger: drug master data, batch
lifecycle, audited quantity adjustments and dispensing against prescriptions.

Drug.stock_quantity is kept equal to the sum of the drug's batch quantities.
Every operation that changes a batch quantity applies the same delta to the
drug aggregate inside the same transaction.
"""

from typing import Optional, List, Dict, Any
from datetime import date, timedelta

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    NotFoundError, ConflictError, BusinessLogicError,
    DuplicateBatchNumberError, StockInconsistencyError,
    InsufficientStockError, InvalidQuantityError, DrugNotPrescribedError
)
from app.domain.pharmacy import reports
from app.domain.pharmacy.filters import DrugFilter, BatchFilter, DispensedDrugFilter
from app.domain.pharmacy.models import (
    Drug, DrugBatch, Prescription, PrescriptionStatus, DispensedDrug
)
from app.domain.pharmacy.repository import (
    DrugRepository, DrugBatchRepository,
    PrescriptionRepository, DispensedDrugRepository
)
from app.infrastructure.database import transaction


BATCH_UPDATE_REASON = "Batch record update"

DRUG_REQUIRED_FIELDS = ("name", "unit", "reorder_level")
BATCH_REQUIRED_FIELDS = ("batch_number", "manufacturing_date", "expiry_date", "unit_cost")


def _expiring_horizon(today: Optional[date] = None) -> date:
    return (today or date.today()) + timedelta(days=settings.EXPIRING_SOON_DAYS)


def _reject_nulls(update_data: dict, required: tuple) -> None:
    cleared = sorted(k for k in required if k in update_data and update_data[k] is None)
    if cleared:
        raise BusinessLogicError(
            f"Fields cannot be cleared: {', '.join(cleared)}",
            details={"fields": cleared},
            error_code="REQUIRED_FIELD_CLEARED"
        )


class DrugService:
    """Service layer for drug master data and aggregate stock checks"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.drug_repo = DrugRepository(db)

    async def create_drug(self, drug_in: dict) -> Drug:
        """Create a drug. Stock always starts at zero and grows through batches."""
        drug_data = {k: v for k, v in drug_in.items() if k != "stock_quantity"}
        drug_data["stock_quantity"] = 0

        async with transaction(self.db, "create drug"):
            drug = await self.drug_repo.create(drug_data)

        logger.info(f"Drug {drug.id} ({drug.name}) created")
        return await self.get_drug(drug.id)

    async def get_drug(self, drug_id: str) -> Drug:
        drug = await self.drug_repo.get_by_id(drug_id, with_batches=True)
        if not drug:
            raise NotFoundError(f"Drug with ID {drug_id} not found")
        return drug

    async def list_drugs(self, filters: Optional[DrugFilter] = None) -> List[Drug]:
        return await self.drug_repo.get_all(filters or DrugFilter())

    async def update_drug(self, drug_id: str, update_data: dict) -> Drug:
        """Update drug master data. The stock counter cannot be edited here."""
        update_data = {k: v for k, v in update_data.items() if k != "stock_quantity"}
        _reject_nulls(update_data, DRUG_REQUIRED_FIELDS)

        async with transaction(self.db, "update drug"):
            drug = await self.drug_repo.get_by_id(drug_id, for_update=True)
            if not drug:
                raise NotFoundError(f"Drug with ID {drug_id} not found")
            if update_data:
                await self.drug_repo.update(drug, update_data)

        return await self.get_drug(drug_id)

    async def delete_drug(self, drug_id: str) -> None:
        async with transaction(self.db, "delete drug"):
            drug = await self.drug_repo.get_by_id(drug_id, for_update=True)
            if not drug:
                raise NotFoundError(f"Drug with ID {drug_id} not found")
            references = await self.drug_repo.count_references(drug_id)
            if any(references.values()):
                raise ConflictError(
                    f"Drug with ID {drug_id} is still referenced",
                    details={"drug_id": drug_id, **references}
                )
            await self.drug_repo.delete(drug_id)
            self.db.expunge(drug)

        logger.info(f"Drug {drug_id} deleted")

    async def get_drug_batches(self, drug_id: str, expiring_soon: bool = False) -> List[DrugBatch]:
        drug = await self.get_drug(drug_id)
        if not expiring_soon:
            return list(drug.batches)
        horizon = _expiring_horizon()
        return [b for b in drug.batches if b.expiry_date <= horizon]

    async def get_inventory_stats(self, today: Optional[date] = None) -> Dict[str, Any]:
        drugs = await self.drug_repo.get_all_with_batches()
        return reports.inventory_stats(drugs, today=today, soon_days=settings.EXPIRING_SOON_DAYS)

    async def get_categories(self) -> List[str]:
        return await self.drug_repo.categories()

    async def get_low_stock_drugs(self) -> List[Drug]:
        return await self.drug_repo.get_low_stock()

    async def get_expiring_soon_drugs(self, today: Optional[date] = None) -> List[Drug]:
        return await self.drug_repo.get_expiring(_expiring_horizon(today))

    async def check_stock_consistency(self, drug_id: str) -> Dict[str, Any]:
        """Compare the cached aggregate against the live batch sum"""
        drug = await self.drug_repo.get_by_id(drug_id)
        if not drug:
            raise NotFoundError(f"Drug with ID {drug_id} not found")
        batch_total = await self.drug_repo.batch_total(drug_id)
        return {
            "drug_id": drug_id,
            "recorded_stock": drug.stock_quantity,
            "batch_total": batch_total,
            "consistent": drug.stock_quantity == batch_total,
        }

    async def reconcile_stock(self, drug_id: str) -> Dict[str, Any]:
        """Rewrite the aggregate from the batch table"""
        async with transaction(self.db, "reconcile drug stock"):
            drug = await self.drug_repo.get_by_id(drug_id, for_update=True)
            if not drug:
                raise NotFoundError(f"Drug with ID {drug_id} not found")
            previous = drug.stock_quantity
            batch_total = await self.drug_repo.batch_total(drug_id)
            if previous != batch_total:
                await self.drug_repo.set_stock(drug_id, batch_total)

        if previous != batch_total:
            logger.warning(
                f"Drug {drug_id} stock reconciled from {previous} to {batch_total}"
            )
        return await self.check_stock_consistency(drug_id)


class DrugBatchService:
    """Service layer for the batch lifecycle"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.drug_repo = DrugRepository(db)
        self.batch_repo = DrugBatchRepository(db)

    async def create_batch(
        self,
        drug_id: str,
        batch_number: str,
        quantity: int,
        manufacturing_date: date,
        expiry_date: date,
        unit_cost: float,
        supplier: Optional[str] = None,
        notes: Optional[str] = None
    ) -> DrugBatch:
        """Receive a new batch and add its quantity to the drug's stock"""
        if quantity < 0:
            raise InvalidQuantityError(details={"quantity": quantity})

        async with transaction(self.db, "create drug batch"):
            drug = await self.drug_repo.get_by_id(drug_id, for_update=True)
            if not drug:
                raise NotFoundError(f"Drug with ID {drug_id} not found")

            if await self.batch_repo.get_by_batch_number(batch_number):
                logger.warning(f"Rejected duplicate batch number {batch_number}")
                raise DuplicateBatchNumberError(batch_number)

            try:
                batch = await self.batch_repo.create({
                    "drug_id": drug_id,
                    "batch_number": batch_number,
                    "quantity": quantity,
                    "manufacturing_date": manufacturing_date,
                    "expiry_date": expiry_date,
                    "unit_cost": unit_cost,
                    "supplier": supplier,
                    "notes": notes,
                })
            except IntegrityError as e:
                # Lost a race against a concurrent insert of the same number
                raise DuplicateBatchNumberError(batch_number) from e

            await self.drug_repo.apply_stock_delta(drug_id, quantity)

        logger.info(f"Batch {batch_number} created for drug {drug_id} with {quantity} units")
        return await self.get_batch(batch.id)

    async def get_batch(self, batch_id: str) -> DrugBatch:
        batch = await self.batch_repo.get_by_id(batch_id, with_details=True)
        if not batch:
            raise NotFoundError(f"Drug batch with ID {batch_id} not found")
        return batch

    async def list_batches(self, filters: Optional[BatchFilter] = None, today: Optional[date] = None) -> List[DrugBatch]:
        return await self.batch_repo.get_all(filters or BatchFilter(), _expiring_horizon(today))

    async def update_batch(
        self,
        batch_id: str,
        update_data: dict,
        adjusted_by: Optional[str] = None
    ) -> DrugBatch:
        """Edit batch metadata.

        A quantity change is applied as an audited adjustment so that the drug
        aggregate and the audit trail follow it.
        """
        update_data = dict(update_data)
        _reject_nulls(update_data, BATCH_REQUIRED_FIELDS)
        new_quantity = update_data.pop("quantity", None)
        if new_quantity is not None and new_quantity < 0:
            raise InvalidQuantityError(details={"quantity": new_quantity})

        async with transaction(self.db, "update drug batch"):
            batch = await self.batch_repo.get_by_id(batch_id, for_update=True)
            if not batch:
                raise NotFoundError(f"Drug batch with ID {batch_id} not found")

            new_number = update_data.get("batch_number")
            if new_number and new_number != batch.batch_number:
                if await self.batch_repo.get_by_batch_number(new_number):
                    raise DuplicateBatchNumberError(new_number)

            manufacturing_date = update_data.get("manufacturing_date", batch.manufacturing_date)
            expiry_date = update_data.get("expiry_date", batch.expiry_date)
            if expiry_date < manufacturing_date:
                raise BusinessLogicError(
                    "Expiry date must be on or after manufacturing date",
                    details={
                        "manufacturing_date": manufacturing_date.isoformat(),
                        "expiry_date": expiry_date.isoformat(),
                    },
                    error_code="INVALID_DATE_RANGE"
                )

            if update_data:
                try:
                    await self.batch_repo.update(batch, update_data)
                except IntegrityError as e:
                    raise DuplicateBatchNumberError(new_number or batch.batch_number) from e

            if new_quantity is not None and new_quantity != batch.quantity:
                await self._apply_adjustment(batch, new_quantity, BATCH_UPDATE_REASON, adjusted_by)

        return await self.get_batch(batch_id)

    async def remove_batch(self, batch_id: str) -> None:
        """Delete a batch and take its remaining units off the drug's stock"""
        async with transaction(self.db, "remove drug batch"):
            batch = await self.batch_repo.get_by_id(batch_id, for_update=True)
            if not batch:
                raise NotFoundError(f"Drug batch with ID {batch_id} not found")

            drug = await self.drug_repo.get_by_id(batch.drug_id, for_update=True)
            if drug.stock_quantity - batch.quantity < 0:
                logger.warning(
                    f"Refused to remove batch {batch_id}: drug {drug.id} holds "
                    f"{drug.stock_quantity} units, batch holds {batch.quantity}"
                )
                raise StockInconsistencyError(
                    "Removing this batch would make the drug stock negative",
                    details={
                        "batch_id": batch_id,
                        "drug_id": drug.id,
                        "drug_stock": drug.stock_quantity,
                        "batch_quantity": batch.quantity,
                    }
                )

            removed_quantity = batch.quantity
            await self.batch_repo.detach_and_delete(batch_id)
            await self.drug_repo.apply_stock_delta(drug.id, -removed_quantity)
            self.db.expunge(batch)

        logger.info(f"Batch {batch_id} removed, {removed_quantity} units taken off drug {drug.id}")

    async def adjust_quantity(
        self,
        batch_id: str,
        new_quantity: int,
        reason: str,
        adjusted_by: Optional[str] = None
    ) -> DrugBatch:
        """Set a batch quantity by hand, recording one audit row"""
        if new_quantity < 0:
            raise InvalidQuantityError(details={"quantity": new_quantity})

        async with transaction(self.db, "adjust drug batch quantity"):
            batch = await self.batch_repo.get_by_id(batch_id, for_update=True)
            if not batch:
                raise NotFoundError(f"Drug batch with ID {batch_id} not found")
            await self._apply_adjustment(batch, new_quantity, reason, adjusted_by)

        return await self.get_batch(batch_id)

    async def _apply_adjustment(
        self,
        batch: DrugBatch,
        new_quantity: int,
        reason: str,
        adjusted_by: Optional[str]
    ) -> None:
        # Caller holds the transaction and the batch row lock
        previous_quantity = batch.quantity
        delta = new_quantity - previous_quantity

        await self.batch_repo.set_quantity(batch.id, new_quantity)
        await self.drug_repo.apply_stock_delta(batch.drug_id, delta)
        await self.batch_repo.add_adjustment({
            "drug_batch_id": batch.id,
            "drug_id": batch.drug_id,
            "previous_quantity": previous_quantity,
            "new_quantity": new_quantity,
            "reason": reason,
            "adjusted_by": adjusted_by,
        })

        logger.info(
            f"Batch {batch.id} adjusted from {previous_quantity} to {new_quantity}: {reason}"
        )

    async def get_expiration_stats(self, today: Optional[date] = None) -> Dict[str, Any]:
        batches = await self.batch_repo.get_all_with_drug()
        return reports.expiration_stats(
            batches,
            today=today,
            soon_days=settings.EXPIRING_SOON_DAYS,
            later_days=settings.EXPIRING_LATER_DAYS
        )

    async def get_expiring_soon_batches(self, today: Optional[date] = None) -> List[DrugBatch]:
        return await self.batch_repo.get_expiring(_expiring_horizon(today))

    async def get_drug_batch_history(self, drug_id: str) -> List[DrugBatch]:
        if not await self.drug_repo.get_by_id(drug_id):
            raise NotFoundError(f"Drug with ID {drug_id} not found")
        return await self.batch_repo.get_by_drug(drug_id)

    async def get_low_stock_batches(self) -> List[DrugBatch]:
        """Batches of drugs whose aggregate stock is at or below reorder level"""
        return await self.batch_repo.get_for_low_stock_drugs()


class PrescriptionService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.drug_repo = DrugRepository(db)
        self.prescription_repo = PrescriptionRepository(db)

    async def create_prescription(self, prescription_in: dict) -> Prescription:
        prescription_data = dict(prescription_in)
        drug_ids = list(dict.fromkeys(prescription_data.pop("drug_ids", None) or []))

        async with transaction(self.db, "create prescription"):
            drugs = await self.drug_repo.get_many(drug_ids)
            found = {d.id for d in drugs}
            for drug_id in drug_ids:
                if drug_id not in found:
                    raise NotFoundError(f"Drug with ID {drug_id} not found")
            if prescription_data.get("prescription_date") is None:
                prescription_data.pop("prescription_date", None)
            prescription = await self.prescription_repo.create(prescription_data, drugs)

        return await self.get_prescription(prescription.id)

    async def get_prescription(self, prescription_id: str) -> Prescription:
        prescription = await self.prescription_repo.get_by_id(prescription_id)
        if not prescription:
            raise NotFoundError(f"Prescription with ID {prescription_id} not found")
        return prescription

    async def list_prescriptions(self, patient_id: Optional[str] = None) -> List[Prescription]:
        return await self.prescription_repo.get_all(patient_id=patient_id)


class DispensedDrugService:
    """Service layer for dispensing against prescriptions"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.drug_repo = DrugRepository(db)
        self.batch_repo = DrugBatchRepository(db)
        self.prescription_repo = PrescriptionRepository(db)
        self.dispensed_repo = DispensedDrugRepository(db)

    async def dispense(
        self,
        prescription_id: str,
        batch_id: str,
        quantity: int,
        dispensed_by: str,
        notes: Optional[str] = None
    ) -> DispensedDrug:
        """Take quantity units from a batch for a prescription"""
        if quantity <= 0:
            raise InvalidQuantityError(
                "Quantity dispensed must be greater than zero",
                details={"quantity": quantity}
            )

        async with transaction(self.db, "dispense drug"):
            prescription = await self.prescription_repo.get_by_id(prescription_id)
            if not prescription:
                raise NotFoundError(f"Prescription with ID {prescription_id} not found")
            if prescription.status == PrescriptionStatus.CANCELLED:
                raise BusinessLogicError(
                    f"Prescription {prescription_id} is cancelled",
                    error_code="PRESCRIPTION_CANCELLED"
                )

            batch = await self.batch_repo.get_by_id(batch_id, for_update=True)
            if not batch:
                raise NotFoundError(f"Drug batch with ID {batch_id} not found")

            prescribed = {d.id for d in prescription.drugs}
            if prescribed and batch.drug_id not in prescribed:
                raise DrugNotPrescribedError(batch.drug_id, prescription_id)

            if batch.quantity < quantity or not await self.batch_repo.reserve(batch_id, quantity):
                logger.warning(
                    f"Insufficient stock in batch {batch_id}: requested {quantity}, "
                    f"available {batch.quantity}"
                )
                raise InsufficientStockError(batch_id, quantity, batch.quantity)

            await self.drug_repo.apply_stock_delta(batch.drug_id, -quantity)
            dispensed = await self.dispensed_repo.create({
                "prescription_id": prescription_id,
                "batch_id": batch_id,
                "drug_id": batch.drug_id,
                "patient_id": prescription.patient_id,
                "quantity_dispensed": quantity,
                "dispensed_by_id": dispensed_by,
                "notes": notes,
            })

        logger.info(
            f"Dispensed {quantity} units from batch {batch_id} for prescription {prescription_id}"
        )
        return await self.get_dispensed(dispensed.id)

    async def get_dispensed(self, dispensed_id: str) -> DispensedDrug:
        dispensed = await self.dispensed_repo.get_by_id(dispensed_id, with_details=True)
        if not dispensed:
            raise NotFoundError(f"Dispensed drug with ID {dispensed_id} not found")
        return dispensed

    async def list_dispensed(self, filters: Optional[DispensedDrugFilter] = None) -> List[DispensedDrug]:
        return await self.dispensed_repo.get_all(filters or DispensedDrugFilter())

    async def update_dispensed(
        self,
        dispensed_id: str,
        quantity: Optional[int] = None,
        notes: Optional[str] = None
    ) -> DispensedDrug:
        """Change the dispensed quantity and move the difference to or from the batch"""
        if quantity is not None and quantity <= 0:
            raise InvalidQuantityError(
                "Quantity dispensed must be greater than zero",
                details={"quantity": quantity}
            )

        async with transaction(self.db, "update dispensed drug"):
            dispensed = await self.dispensed_repo.get_by_id(dispensed_id, for_update=True)
            if not dispensed:
                raise NotFoundError(f"Dispensed drug with ID {dispensed_id} not found")

            old_quantity = dispensed.quantity_dispensed
            if quantity is not None and quantity != old_quantity:
                delta = quantity - old_quantity
                await self._move_stock(dispensed, delta)
                await self.dispensed_repo.set_quantity(dispensed_id, quantity, notes)
                logger.info(
                    f"Dispensed drug {dispensed_id} changed from {old_quantity} to {quantity} units"
                )
            elif notes is not None:
                await self.dispensed_repo.set_notes(dispensed_id, notes)

        return await self.get_dispensed(dispensed_id)

    async def _move_stock(self, dispensed: DispensedDrug, delta: int) -> None:
        # delta > 0 draws more from the batch, delta < 0 returns units to it.
        # Once the batch is removed there is nothing left to draw from or return to.
        if dispensed.batch_id is None:
            if delta > 0:
                raise BusinessLogicError(
                    f"Batch for dispensed drug {dispensed.id} has been removed",
                    details={"dispensed_drug_id": dispensed.id, "requested": delta},
                    error_code="INSUFFICIENT_STOCK"
                )
            return

        if delta > 0:
            if not await self.batch_repo.reserve(dispensed.batch_id, delta):
                batch = await self.batch_repo.get_by_id(dispensed.batch_id)
                logger.warning(
                    f"Insufficient stock in batch {dispensed.batch_id} to raise dispensed drug "
                    f"{dispensed.id} by {delta}"
                )
                raise InsufficientStockError(dispensed.batch_id, delta, batch.quantity if batch else 0)
        else:
            await self.batch_repo.increment(dispensed.batch_id, -delta)
        await self.drug_repo.apply_stock_delta(dispensed.drug_id, -delta)

    async def reverse_dispensed(self, dispensed_id: str) -> None:
        """Put the dispensed units back on the batch, then drop the record"""
        async with transaction(self.db, "reverse dispensed drug"):
            dispensed = await self.dispensed_repo.get_by_id(dispensed_id, for_update=True)
            if not dispensed:
                raise NotFoundError(f"Dispensed drug with ID {dispensed_id} not found")

            quantity = dispensed.quantity_dispensed
            if dispensed.batch_id is not None:
                await self._move_stock(dispensed, -quantity)
            await self.dispensed_repo.delete(dispensed_id)
            self.db.expunge(dispensed)

        logger.info(f"Dispensed drug {dispensed_id} reversed, {quantity} units restored")

    async def get_stats(self) -> Dict[str, Any]:
        total = await self.dispensed_repo.count()
        totals = await self.dispensed_repo.totals_by_drug()
        drugs = {d.id: d for d in await self.drug_repo.get_many([t[0] for t in totals])}
        recent = await self.dispensed_repo.get_recent(settings.RECENT_DISPENSED_LIMIT)

        return {
            "total_dispensed": total,
            "drug_stats": [
                {"drug": drugs.get(drug_id), "total_dispensed": quantity, "count": count}
                for drug_id, quantity, count in totals
            ],
            "recent_dispensed": recent,
        }

    async def get_prescription_dispensed(self, prescription_id: str) -> List[DispensedDrug]:
        if not await self.prescription_repo.get_by_id(prescription_id, with_drugs=False):
            raise NotFoundError(f"Prescription with ID {prescription_id} not found")
        return await self.dispensed_repo.get_all(DispensedDrugFilter(prescription_id=prescription_id))

    async def get_patient_dispensed(self, patient_id: str) -> List[DispensedDrug]:
        return await self.dispensed_repo.get_all(DispensedDrugFilter(patient_id=patient_id))
