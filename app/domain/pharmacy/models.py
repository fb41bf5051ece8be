from sqlalchemy import (
    Column, String, Integer, Float, Date, DateTime, ForeignKey, Text, Enum,
    Table, CheckConstraint, func
)
from sqlalchemy.orm import relationship
import uuid
import enum
from datetime import datetime

from app.infrastructure.database import Base


def gen_uuid():
    return str(uuid.uuid4())


class PrescriptionStatus(str, enum.Enum):
    """Prescription status enumeration"""
    ACTIVE = "ACTIVE"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


prescription_drugs = Table(
    "prescription_drugs",
    Base.metadata,
    Column("prescription_id", String(36), ForeignKey("prescriptions.id", ondelete="CASCADE"), primary_key=True),
    Column("drug_id", String(36), ForeignKey("drugs.id"), primary_key=True),
)


class Drug(Base):
    """Drug master record.

    stock_quantity is a denormalized cache of the sum of the drug's batch
    quantities and is only changed by the batch ledger operations.
    """
    __tablename__ = "drugs"
    __table_args__ = (
        CheckConstraint("reorder_level >= 0", name="ck_drugs_reorder_level_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=gen_uuid)
    name = Column(String(255), nullable=False, index=True)
    generic_name = Column(String(255), nullable=True)
    manufacturer = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True, index=True)
    strength = Column(String(64), nullable=True)
    unit = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    reorder_level = Column(Integer, nullable=False, default=0)
    cost_price = Column(Float, nullable=True)
    selling_price = Column(Float, nullable=True)
    location = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    batches = relationship("DrugBatch", back_populates="drug", order_by="DrugBatch.expiry_date")


class DrugBatch(Base):
    """A received lot of a drug"""
    __tablename__ = "drug_batches"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_drug_batches_quantity_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=gen_uuid)
    drug_id = Column(String(36), ForeignKey("drugs.id"), nullable=False, index=True)
    batch_number = Column(String(64), nullable=False, unique=True, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    manufacturing_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False, index=True)
    unit_cost = Column(Float, nullable=False, default=0)
    supplier = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    drug = relationship("Drug", back_populates="batches")
    adjustments = relationship(
        "DrugBatchAdjustment",
        back_populates="batch",
        order_by=lambda: DrugBatchAdjustment.created_at.desc()
    )
    dispensed = relationship("DispensedDrug", back_populates="batch")


class DrugBatchAdjustment(Base):
    """Immutable audit row for a manual batch quantity correction"""
    __tablename__ = "drug_batch_adjustments"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    # Kept after the batch is removed, so the reference is nullable
    drug_batch_id = Column(String(36), ForeignKey("drug_batches.id", ondelete="SET NULL"), nullable=True, index=True)
    drug_id = Column(String(36), ForeignKey("drugs.id"), nullable=False, index=True)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    adjusted_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    batch = relationship("DrugBatch", back_populates="adjustments")


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    patient_id = Column(String(36), nullable=False, index=True)
    prescribed_by_id = Column(String(36), nullable=False)
    prescription_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(Enum(PrescriptionStatus), nullable=False, default=PrescriptionStatus.ACTIVE)
    dosage = Column(String(100), nullable=True)
    frequency = Column(String(100), nullable=True)
    duration = Column(String(100), nullable=True)
    instructions = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now())

    drugs = relationship("Drug", secondary=prescription_drugs, order_by="Drug.name")
    dispensed = relationship("DispensedDrug", back_populates="prescription")


class DispensedDrug(Base):
    """One dispensing event against a batch for a prescription"""
    __tablename__ = "dispensed_drugs"
    __table_args__ = (
        CheckConstraint("quantity_dispensed > 0", name="ck_dispensed_drugs_quantity_positive"),
    )

    id = Column(String(36), primary_key=True, default=gen_uuid)
    prescription_id = Column(String(36), ForeignKey("prescriptions.id"), nullable=False, index=True)
    batch_id = Column(String(36), ForeignKey("drug_batches.id", ondelete="SET NULL"), nullable=True, index=True)
    drug_id = Column(String(36), ForeignKey("drugs.id"), nullable=False, index=True)
    patient_id = Column(String(36), nullable=False, index=True)
    quantity_dispensed = Column(Integer, nullable=False)
    dispensed_by_id = Column(String(36), nullable=False)
    dispense_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    notes = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    prescription = relationship("Prescription", back_populates="dispensed")
    batch = relationship("DrugBatch", back_populates="dispensed")
    drug = relationship("Drug")
