"""Create patients, magic_links, services and payments tables

Revision ID: 1f2e3d4c5b6a
Revises:
Create Date: 2025-08-04 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '1f2e3d4c5b6a'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('patients',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('date_of_birth', sa.String(length=255), nullable=True), # Encrypted
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_patients'),
    )
    op.create_index(op.f('ix_patients_email'), 'patients', ['email'], unique=True)

    op.create_table('magic_links',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('patient_id', sa.String(length=32), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('used', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('used_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], name='fk_magic_links_patient_id'),
        sa.PrimaryKeyConstraint('id', name='pk_magic_links'),
    )
    op.create_index(op.f('ix_magic_links_token'), 'magic_links', ['token'], unique=True)
    op.create_index(op.f('ix_magic_links_patient_id'), 'magic_links', ['patient_id'], unique=False)

    op.create_table('services',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('patient_id', sa.String(length=32), nullable=False),
        sa.Column('service_code', sa.String(length=50), nullable=False),
        sa.Column('service_name', sa.String(length=255), nullable=False),
        sa.Column('service_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('original_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('discounted_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('insurance_denial_reason', sa.Text(), nullable=True),
        sa.Column('insurance_company_phone', sa.String(length=50), nullable=True),
        sa.Column('is_paid', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], name='fk_services_patient_id'),
        sa.PrimaryKeyConstraint('id', name='pk_services'),
        sa.CheckConstraint('discounted_amount <= original_amount', name='ck_services_discount_not_above_original'),
        sa.CheckConstraint('discounted_amount >= 0', name='ck_services_discount_non_negative'),
    )
    op.create_index(op.f('ix_services_patient_id'), 'services', ['patient_id'], unique=False)
    op.create_index(op.f('ix_services_service_code'), 'services', ['service_code'], unique=False)
    op.create_index(op.f('ix_services_service_date'), 'services', ['service_date'], unique=False)
    op.create_index(op.f('ix_services_is_paid'), 'services', ['is_paid'], unique=False)

    op.create_table('payments',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('patient_id', sa.String(length=32), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=10), server_default='usd', nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('service_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], name='fk_payments_patient_id'),
        sa.PrimaryKeyConstraint('id', name='pk_payments'),
        sa.CheckConstraint("status IN ('pending', 'succeeded', 'failed', 'canceled')", name='ck_payments_status'),
    )
    # Unique index doubles as the idempotency guard for concurrent confirmations.
    op.create_index(op.f('ix_payments_stripe_payment_intent_id'), 'payments', ['stripe_payment_intent_id'], unique=True)
    op.create_index(op.f('ix_payments_patient_id'), 'payments', ['patient_id'], unique=False)
    op.create_index(op.f('ix_payments_status'), 'payments', ['status'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_payments_status'), table_name='payments')
    op.drop_index(op.f('ix_payments_patient_id'), table_name='payments')
    op.drop_index(op.f('ix_payments_stripe_payment_intent_id'), table_name='payments')
    op.drop_table('payments')

    op.drop_index(op.f('ix_services_is_paid'), table_name='services')
    op.drop_index(op.f('ix_services_service_date'), table_name='services')
    op.drop_index(op.f('ix_services_service_code'), table_name='services')
    op.drop_index(op.f('ix_services_patient_id'), table_name='services')
    op.drop_table('services')

    op.drop_index(op.f('ix_magic_links_patient_id'), table_name='magic_links')
    op.drop_index(op.f('ix_magic_links_token'), table_name='magic_links')
    op.drop_table('magic_links')

    op.drop_index(op.f('ix_patients_email'), table_name='patients')
    op.drop_table('patients')
