"""
Drug Batch API Schemas

Pydantic models for batch requests, responses and expiration reports.
"""

from pydantic import BaseModel, Field, computed_field, model_validator
from typing import Optional, List
from datetime import datetime, date

from app.api.v1.drugs.schemas import DrugSummary
from app.domain.pharmacy.reports import BatchState, batch_state


class DrugBatchCreate(BaseModel):
    """Schema for receiving a new batch.

    Quantity is checked by the service so a negative value is reported as a
    domain error rather than a request-shape error.
    """
    drug_id: str
    batch_number: str = Field(..., min_length=1, max_length=64)
    quantity: int
    manufacturing_date: date
    expiry_date: date
    unit_cost: float = Field(..., ge=0)
    supplier: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_dates(self) -> "DrugBatchCreate":
        if self.expiry_date < self.manufacturing_date:
            raise ValueError("Expiry date must be on or after manufacturing date")
        return self


class DrugBatchUpdate(BaseModel):
    """Schema for editing a batch. A quantity change is recorded as an adjustment."""
    batch_number: Optional[str] = Field(None, min_length=1, max_length=64)
    quantity: Optional[int] = None
    manufacturing_date: Optional[date] = None
    expiry_date: Optional[date] = None
    unit_cost: Optional[float] = Field(None, ge=0)
    supplier: Optional[str] = None
    notes: Optional[str] = None
    adjusted_by: Optional[str] = None


class AdjustQuantityRequest(BaseModel):
    quantity: int
    reason: str = Field(..., min_length=1, max_length=1000)
    adjusted_by: Optional[str] = None


class DrugBatchAdjustmentResponse(BaseModel):
    id: str
    drug_batch_id: Optional[str] = None
    drug_id: str
    previous_quantity: int
    new_quantity: int
    reason: str
    adjusted_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DrugBatchListItem(BaseModel):
    """Batch with its drug, without the adjustment trail"""
    id: str
    drug_id: str
    batch_number: str
    quantity: int
    manufacturing_date: date
    expiry_date: date
    unit_cost: float
    supplier: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    drug: DrugSummary

    @computed_field
    @property
    def state(self) -> BatchState:
        return batch_state(self)

    class Config:
        from_attributes = True


class DrugBatchResponse(DrugBatchListItem):
    adjustments: List[DrugBatchAdjustmentResponse] = []


class DrugExpirationGroup(BaseModel):
    drug_id: str
    drug_name: str
    total_batches: int
    total_quantity: int
    expiring_soon: int
    expired: int


class ExpirationStatsResponse(BaseModel):
    total_batches: int
    expired_batches: int
    expiring_soon_batches: int
    expiring_later_batches: int
    total_quantity: int
    expired_quantity: int
    expiring_soon_quantity: int
    by_drug: List[DrugExpirationGroup]
