"""
Drug API Schemas

Pydantic models for drug master data and stock reports.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date


class DrugBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    unit: str = Field(..., min_length=1, max_length=32)
    reorder_level: int = Field(0, ge=0)
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    strength: Optional[str] = None
    description: Optional[str] = None
    cost_price: Optional[float] = Field(None, ge=0)
    selling_price: Optional[float] = Field(None, ge=0)
    location: Optional[str] = None


class DrugCreate(DrugBase):
    """Schema for creating a drug. Stock is received through batches."""
    pass


class DrugUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    unit: Optional[str] = Field(None, min_length=1, max_length=32)
    reorder_level: Optional[int] = Field(None, ge=0)
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    strength: Optional[str] = None
    description: Optional[str] = None
    cost_price: Optional[float] = Field(None, ge=0)
    selling_price: Optional[float] = Field(None, ge=0)
    location: Optional[str] = None


class DrugSummary(BaseModel):
    id: str
    name: str
    category: Optional[str] = None
    unit: str
    stock_quantity: int
    reorder_level: int

    class Config:
        from_attributes = True


class DrugResponse(DrugBase):
    id: str
    stock_quantity: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DrugBatchBrief(BaseModel):
    id: str
    batch_number: str
    quantity: int
    manufacturing_date: date
    expiry_date: date
    unit_cost: float
    supplier: Optional[str] = None

    class Config:
        from_attributes = True


class DrugDetailResponse(DrugResponse):
    batches: List[DrugBatchBrief] = []


class InventoryStatsResponse(BaseModel):
    total_drugs: int
    total_quantity: int
    low_stock_drugs: int
    out_of_stock_drugs: int
    expiring_batches: int


class StockConsistencyResponse(BaseModel):
    drug_id: str
    recorded_stock: int
    batch_total: int
    consistent: bool
