"""
Drug API Routes

Endpoints for drug master data, stock reports and stock consistency checks.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.infrastructure.database import get_db
from app.domain.pharmacy.filters import DrugFilter
from app.domain.pharmacy.service import DrugService
from app.api.v1.drugs.schemas import (
    DrugCreate, DrugUpdate, DrugResponse, DrugDetailResponse, DrugBatchBrief,
    InventoryStatsResponse, StockConsistencyResponse
)

router = APIRouter()


@router.post("", response_model=DrugDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_drug(drug_in: DrugCreate, db: AsyncSession = Depends(get_db)):
    """Create a new drug"""
    service = DrugService(db)
    return await service.create_drug(drug_in.model_dump())


@router.get("", response_model=List[DrugResponse])
async def list_drugs(
    search: Optional[str] = None,
    category: Optional[str] = None,
    in_stock: Optional[bool] = None,
    db: AsyncSession = Depends(get_db)
):
    """List drugs ordered by name"""
    service = DrugService(db)
    return await service.list_drugs(DrugFilter(search=search, category=category, in_stock=in_stock))


@router.get("/stats/inventory", response_model=InventoryStatsResponse)
async def get_inventory_stats(db: AsyncSession = Depends(get_db)):
    service = DrugService(db)
    return await service.get_inventory_stats()


@router.get("/categories", response_model=List[str])
async def get_categories(db: AsyncSession = Depends(get_db)):
    service = DrugService(db)
    return await service.get_categories()


@router.get("/low-stock", response_model=List[DrugResponse])
async def get_low_stock_drugs(db: AsyncSession = Depends(get_db)):
    """Drugs whose stock is at or below their reorder level"""
    service = DrugService(db)
    return await service.get_low_stock_drugs()


@router.get("/expiring-soon", response_model=List[DrugDetailResponse])
async def get_expiring_soon_drugs(db: AsyncSession = Depends(get_db)):
    """Drugs with batches expiring soon, listing only those batches"""
    service = DrugService(db)
    return await service.get_expiring_soon_drugs()


@router.get("/{drug_id}", response_model=DrugDetailResponse)
async def get_drug(drug_id: str, db: AsyncSession = Depends(get_db)):
    service = DrugService(db)
    return await service.get_drug(drug_id)


@router.patch("/{drug_id}", response_model=DrugDetailResponse)
async def update_drug(drug_id: str, update_data: DrugUpdate, db: AsyncSession = Depends(get_db)):
    service = DrugService(db)
    return await service.update_drug(drug_id, update_data.model_dump(exclude_unset=True))


@router.delete("/{drug_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_drug(drug_id: str, db: AsyncSession = Depends(get_db)):
    service = DrugService(db)
    await service.delete_drug(drug_id)


@router.get("/{drug_id}/batches", response_model=List[DrugBatchBrief])
async def get_drug_batches(
    drug_id: str,
    expiring_soon: bool = Query(False),
    db: AsyncSession = Depends(get_db)
):
    service = DrugService(db)
    return await service.get_drug_batches(drug_id, expiring_soon)


@router.get("/{drug_id}/stock-consistency", response_model=StockConsistencyResponse)
async def check_stock_consistency(drug_id: str, db: AsyncSession = Depends(get_db)):
    """Compare the drug's stock counter with the sum of its batches"""
    service = DrugService(db)
    return await service.check_stock_consistency(drug_id)


@router.post("/{drug_id}/reconcile-stock", response_model=StockConsistencyResponse)
async def reconcile_stock(drug_id: str, db: AsyncSession = Depends(get_db)):
    """Reset the drug's stock counter to the sum of its batches"""
    service = DrugService(db)
    return await service.reconcile_stock(drug_id)
