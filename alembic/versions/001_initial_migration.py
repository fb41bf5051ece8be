"""Initial migration

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create drugs table
    op.create_table(
        'drugs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('generic_name', sa.String(length=255), nullable=True),
        sa.Column('manufacturer', sa.String(length=255), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('strength', sa.String(length=64), nullable=True),
        sa.Column('unit', sa.String(length=32), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reorder_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_price', sa.Float(), nullable=True),
        sa.Column('selling_price', sa.Float(), nullable=True),
        sa.Column('location', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('reorder_level >= 0', name='ck_drugs_reorder_level_non_negative')
    )
    op.create_index('ix_drugs_name', 'drugs', ['name'], unique=False)
    op.create_index('ix_drugs_category', 'drugs', ['category'], unique=False)

    # Create drug_batches table
    op.create_table(
        'drug_batches',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.Column('batch_number', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('manufacturing_date', sa.Date(), nullable=False),
        sa.Column('expiry_date', sa.Date(), nullable=False),
        sa.Column('unit_cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('supplier', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['drug_id'], ['drugs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity >= 0', name='ck_drug_batches_quantity_non_negative')
    )
    op.create_index('ix_drug_batches_drug_id', 'drug_batches', ['drug_id'], unique=False)
    op.create_index('ix_drug_batches_batch_number', 'drug_batches', ['batch_number'], unique=True)
    op.create_index('ix_drug_batches_expiry_date', 'drug_batches', ['expiry_date'], unique=False)

    # Create drug_batch_adjustments table
    op.create_table(
        'drug_batch_adjustments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('drug_batch_id', sa.String(length=36), nullable=True),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.Column('previous_quantity', sa.Integer(), nullable=False),
        sa.Column('new_quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('adjusted_by', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['drug_batch_id'], ['drug_batches.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['drug_id'], ['drugs.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_drug_batch_adjustments_drug_batch_id', 'drug_batch_adjustments', ['drug_batch_id'], unique=False)
    op.create_index('ix_drug_batch_adjustments_drug_id', 'drug_batch_adjustments', ['drug_id'], unique=False)

    # Create prescriptions table
    op.create_table(
        'prescriptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('patient_id', sa.String(length=36), nullable=False),
        sa.Column('prescribed_by_id', sa.String(length=36), nullable=False),
        sa.Column('prescription_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.Enum('ACTIVE', 'FILLED', 'CANCELLED', name='prescriptionstatus'), nullable=False),
        sa.Column('dosage', sa.String(length=100), nullable=True),
        sa.Column('frequency', sa.String(length=100), nullable=True),
        sa.Column('duration', sa.String(length=100), nullable=True),
        sa.Column('instructions', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_prescriptions_patient_id', 'prescriptions', ['patient_id'], unique=False)

    # Create prescription_drugs association table
    op.create_table(
        'prescription_drugs',
        sa.Column('prescription_id', sa.String(length=36), nullable=False),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['drug_id'], ['drugs.id']),
        sa.PrimaryKeyConstraint('prescription_id', 'drug_id')
    )

    # Create dispensed_drugs table
    op.create_table(
        'dispensed_drugs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('prescription_id', sa.String(length=36), nullable=False),
        sa.Column('batch_id', sa.String(length=36), nullable=True),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.Column('patient_id', sa.String(length=36), nullable=False),
        sa.Column('quantity_dispensed', sa.Integer(), nullable=False),
        sa.Column('dispensed_by_id', sa.String(length=36), nullable=False),
        sa.Column('dispense_date', sa.DateTime(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id']),
        sa.ForeignKeyConstraint(['batch_id'], ['drug_batches.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['drug_id'], ['drugs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity_dispensed > 0', name='ck_dispensed_drugs_quantity_positive')
    )
    op.create_index('ix_dispensed_drugs_prescription_id', 'dispensed_drugs', ['prescription_id'], unique=False)
    op.create_index('ix_dispensed_drugs_batch_id', 'dispensed_drugs', ['batch_id'], unique=False)
    op.create_index('ix_dispensed_drugs_drug_id', 'dispensed_drugs', ['drug_id'], unique=False)
    op.create_index('ix_dispensed_drugs_patient_id', 'dispensed_drugs', ['patient_id'], unique=False)


def downgrade() -> None:
    # Drop all tables in reverse order of creation
    op.drop_table('dispensed_drugs')
    op.drop_table('prescription_drugs')
    op.drop_table('prescriptions')
    op.drop_table('drug_batch_adjustments')
    op.drop_table('drug_batches')
    op.drop_table('drugs')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS prescriptionstatus')
