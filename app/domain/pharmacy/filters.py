"""
Typed query criteria for pharmacy listings.

Every optional field left as None is ignored when the query is built.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional
import enum


class SortOrder(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


class BatchSortField(str, enum.Enum):
    EXPIRY_DATE = "expiryDate"
    MANUFACTURING_DATE = "manufacturingDate"
    QUANTITY = "quantity"


class DispensedSortField(str, enum.Enum):
    DISPENSE_DATE = "dispenseDate"
    QUANTITY_DISPENSED = "quantityDispensed"


@dataclass(frozen=True)
class DrugFilter:
    search: Optional[str] = None
    category: Optional[str] = None
    in_stock: Optional[bool] = None


@dataclass(frozen=True)
class BatchFilter:
    drug_id: Optional[str] = None
    expiring_soon: bool = False
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None
    supplier: Optional[str] = None
    sort_by: BatchSortField = BatchSortField.EXPIRY_DATE
    sort_order: SortOrder = SortOrder.ASC


@dataclass(frozen=True)
class DispensedDrugFilter:
    prescription_id: Optional[str] = None
    patient_id: Optional[str] = None
    drug_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sort_by: DispensedSortField = DispensedSortField.DISPENSE_DATE
    sort_order: SortOrder = SortOrder.DESC
