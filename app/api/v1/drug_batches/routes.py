"""
Drug Batch API Routes

Endpoints for batch receipt, removal, audited quantity adjustment and
expiration / low stock reports.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import date

from app.infrastructure.database import get_db
from app.domain.pharmacy.filters import BatchFilter, BatchSortField, SortOrder
from app.domain.pharmacy.service import DrugBatchService
from app.api.v1.drug_batches.schemas import (
    DrugBatchCreate, DrugBatchUpdate, AdjustQuantityRequest,
    DrugBatchResponse, DrugBatchListItem, ExpirationStatsResponse
)

router = APIRouter()


@router.post("", response_model=DrugBatchResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(batch_in: DrugBatchCreate, db: AsyncSession = Depends(get_db)):
    """Receive a new batch and add its quantity to the drug stock"""
    service = DrugBatchService(db)
    return await service.create_batch(**batch_in.model_dump())


@router.get("", response_model=List[DrugBatchResponse])
async def list_batches(
    drug_id: Optional[str] = None,
    expiring_soon: bool = Query(False),
    start_date: Optional[date] = Query(None, description="Manufactured on or after"),
    end_date: Optional[date] = Query(None, description="Manufactured on or before"),
    search: Optional[str] = None,
    supplier: Optional[str] = None,
    sort_by: BatchSortField = Query(BatchSortField.EXPIRY_DATE),
    sort_order: SortOrder = Query(SortOrder.ASC),
    db: AsyncSession = Depends(get_db)
):
    service = DrugBatchService(db)
    filters = BatchFilter(
        drug_id=drug_id,
        expiring_soon=expiring_soon,
        start_date=start_date,
        end_date=end_date,
        search=search,
        supplier=supplier,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return await service.list_batches(filters)


@router.get("/stats/expiration", response_model=ExpirationStatsResponse)
async def get_expiration_stats(db: AsyncSession = Depends(get_db)):
    service = DrugBatchService(db)
    return await service.get_expiration_stats()


@router.get("/expiring-soon", response_model=List[DrugBatchListItem])
async def get_expiring_soon_batches(db: AsyncSession = Depends(get_db)):
    service = DrugBatchService(db)
    return await service.get_expiring_soon_batches()


@router.get("/low-stock", response_model=List[DrugBatchListItem])
async def get_low_stock_batches(db: AsyncSession = Depends(get_db)):
    """Batches of drugs at or below their reorder level"""
    service = DrugBatchService(db)
    return await service.get_low_stock_batches()


@router.get("/drug/{drug_id}/history", response_model=List[DrugBatchResponse])
async def get_drug_batch_history(drug_id: str, db: AsyncSession = Depends(get_db)):
    service = DrugBatchService(db)
    return await service.get_drug_batch_history(drug_id)


@router.get("/{batch_id}", response_model=DrugBatchResponse)
async def get_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    service = DrugBatchService(db)
    return await service.get_batch(batch_id)


@router.patch("/{batch_id}", response_model=DrugBatchResponse)
async def update_batch(batch_id: str, update_data: DrugBatchUpdate, db: AsyncSession = Depends(get_db)):
    service = DrugBatchService(db)
    data = update_data.model_dump(exclude_unset=True)
    adjusted_by = data.pop("adjusted_by", None)
    return await service.update_batch(batch_id, data, adjusted_by=adjusted_by)


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    """Remove a batch and take its remaining units off the drug stock"""
    service = DrugBatchService(db)
    await service.remove_batch(batch_id)


@router.patch("/{batch_id}/adjust-quantity", response_model=DrugBatchResponse)
async def adjust_quantity(
    batch_id: str,
    adjustment: AdjustQuantityRequest,
    db: AsyncSession = Depends(get_db)
):
    """Correct a batch quantity by hand; the change is audited"""
    service = DrugBatchService(db)
    return await service.adjust_quantity(
        batch_id,
        adjustment.quantity,
        adjustment.reason,
        adjusted_by=adjustment.adjusted_by
    )
