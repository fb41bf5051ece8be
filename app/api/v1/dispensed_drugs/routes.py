"""
Dispensed Drug API Routes

Endpoints for dispensing against prescriptions, adjusting or reversing a
dispensing event and dispensing statistics.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import date

from app.infrastructure.database import get_db
from app.domain.pharmacy.filters import DispensedDrugFilter, DispensedSortField, SortOrder
from app.domain.pharmacy.service import DispensedDrugService
from app.api.v1.dispensed_drugs.schemas import (
    DispensedDrugCreate, DispensedDrugUpdate, DispensedDrugResponse, DispensingStatsResponse
)

router = APIRouter()


@router.post("", response_model=DispensedDrugResponse, status_code=status.HTTP_201_CREATED)
async def dispense(request: DispensedDrugCreate, db: AsyncSession = Depends(get_db)):
    """Dispense from a batch against a prescription"""
    service = DispensedDrugService(db)
    return await service.dispense(
        prescription_id=request.prescription_id,
        batch_id=request.batch_id,
        quantity=request.quantity_dispensed,
        dispensed_by=request.dispensed_by_id,
        notes=request.notes
    )


@router.get("", response_model=List[DispensedDrugResponse])
async def list_dispensed(
    prescription_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    drug_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    sort_by: DispensedSortField = Query(DispensedSortField.DISPENSE_DATE),
    sort_order: SortOrder = Query(SortOrder.DESC),
    db: AsyncSession = Depends(get_db)
):
    service = DispensedDrugService(db)
    filters = DispensedDrugFilter(
        prescription_id=prescription_id,
        patient_id=patient_id,
        drug_id=drug_id,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return await service.list_dispensed(filters)


@router.get("/stats/overview", response_model=DispensingStatsResponse)
async def get_dispensing_stats(db: AsyncSession = Depends(get_db)):
    service = DispensedDrugService(db)
    return await service.get_stats()


@router.get("/prescription/{prescription_id}", response_model=List[DispensedDrugResponse])
async def get_prescription_dispensed(prescription_id: str, db: AsyncSession = Depends(get_db)):
    service = DispensedDrugService(db)
    return await service.get_prescription_dispensed(prescription_id)


@router.get("/patient/{patient_id}", response_model=List[DispensedDrugResponse])
async def get_patient_dispensed(patient_id: str, db: AsyncSession = Depends(get_db)):
    service = DispensedDrugService(db)
    return await service.get_patient_dispensed(patient_id)


@router.get("/{dispensed_id}", response_model=DispensedDrugResponse)
async def get_dispensed(dispensed_id: str, db: AsyncSession = Depends(get_db)):
    service = DispensedDrugService(db)
    return await service.get_dispensed(dispensed_id)


@router.patch("/{dispensed_id}", response_model=DispensedDrugResponse)
async def update_dispensed(
    dispensed_id: str,
    update_data: DispensedDrugUpdate,
    db: AsyncSession = Depends(get_db)
):
    service = DispensedDrugService(db)
    return await service.update_dispensed(
        dispensed_id,
        quantity=update_data.quantity_dispensed,
        notes=update_data.notes
    )


@router.delete("/{dispensed_id}", status_code=status.HTTP_204_NO_CONTENT)
async def reverse_dispensed(dispensed_id: str, db: AsyncSession = Depends(get_db)):
    """Reverse a dispensing event, restoring its units to the batch"""
    service = DispensedDrugService(db)
    await service.reverse_dispensed(dispensed_id)
