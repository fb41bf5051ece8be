"""
Inventory reporting helpers.

Pure functions over already-loaded batches and drugs; expiry is always
computed against the supplied date, never stored.
"""

from typing import Dict, Any, List, Iterable, Optional
from datetime import date, timedelta
import enum

from app.domain.pharmacy.models import Drug, DrugBatch


class ExpiryBucket(str, enum.Enum):
    EXPIRED = "EXPIRED"
    EXPIRING_SOON = "EXPIRING_SOON"
    EXPIRING_LATER = "EXPIRING_LATER"
    OK = "OK"


class BatchState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"


def batch_state(batch: DrugBatch) -> BatchState:
    return BatchState.ACTIVE if batch.quantity > 0 else BatchState.DEPLETED


def expiry_bucket(
    expiry_date: date,
    today: date,
    soon_days: int = 30,
    later_days: int = 90
) -> ExpiryBucket:
    """Classify an expiry date relative to today"""
    if expiry_date < today:
        return ExpiryBucket.EXPIRED
    if expiry_date <= today + timedelta(days=soon_days):
        return ExpiryBucket.EXPIRING_SOON
    if expiry_date <= today + timedelta(days=later_days):
        return ExpiryBucket.EXPIRING_LATER
    return ExpiryBucket.OK


def is_low_stock(drug: Drug) -> bool:
    return drug.stock_quantity <= drug.reorder_level


def group_batches_by_drug(
    batches: Iterable[DrugBatch],
    today: date,
    soon_days: int = 30,
    later_days: int = 90
) -> List[Dict[str, Any]]:
    groups: Dict[str, Dict[str, Any]] = {}
    for batch in batches:
        group = groups.setdefault(batch.drug_id, {
            "drug_id": batch.drug_id,
            "drug_name": batch.drug.name,
            "total_batches": 0,
            "total_quantity": 0,
            "expiring_soon": 0,
            "expired": 0,
        })
        group["total_batches"] += 1
        group["total_quantity"] += batch.quantity
        bucket = expiry_bucket(batch.expiry_date, today, soon_days, later_days)
        if bucket == ExpiryBucket.EXPIRED:
            group["expired"] += 1
        elif bucket == ExpiryBucket.EXPIRING_SOON:
            group["expiring_soon"] += 1
    return list(groups.values())


def expiration_stats(
    batches: List[DrugBatch],
    today: Optional[date] = None,
    soon_days: int = 30,
    later_days: int = 90
) -> Dict[str, Any]:
    """Bucket batches into expired / expiring soon / expiring later.

    Expiring soon covers [today, today + soon_days]; expiring later covers
    (today + soon_days, today + later_days].
    """
    today = today or date.today()
    buckets: Dict[ExpiryBucket, List[DrugBatch]] = {bucket: [] for bucket in ExpiryBucket}
    for batch in batches:
        buckets[expiry_bucket(batch.expiry_date, today, soon_days, later_days)].append(batch)

    expired = buckets[ExpiryBucket.EXPIRED]
    soon = buckets[ExpiryBucket.EXPIRING_SOON]
    later = buckets[ExpiryBucket.EXPIRING_LATER]

    return {
        "total_batches": len(batches),
        "expired_batches": len(expired),
        "expiring_soon_batches": len(soon),
        "expiring_later_batches": len(later),
        "total_quantity": sum(b.quantity for b in batches),
        "expired_quantity": sum(b.quantity for b in expired),
        "expiring_soon_quantity": sum(b.quantity for b in soon),
        "by_drug": group_batches_by_drug(batches, today, soon_days, later_days),
    }


def inventory_stats(
    drugs: List[Drug],
    today: Optional[date] = None,
    soon_days: int = 30
) -> Dict[str, Any]:
    """Summarize drug-level stock. Drugs must have their batches loaded."""
    today = today or date.today()
    horizon = today + timedelta(days=soon_days)
    return {
        "total_drugs": len(drugs),
        "total_quantity": sum(d.stock_quantity for d in drugs),
        "low_stock_drugs": sum(1 for d in drugs if is_low_stock(d)),
        "out_of_stock_drugs": sum(1 for d in drugs if d.stock_quantity == 0),
        "expiring_batches": sum(
            1 for d in drugs for b in d.batches if b.expiry_date <= horizon
        ),
    }
