"""Create insurance_cards, insurance_updates and patient_actions tables

Revision ID: 2a3b4c5d6e7f
Revises: 1f2e3d4c5b6a
Create Date: 2025-08-04 10:30:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '2a3b4c5d6e7f'
down_revision = '1f2e3d4c5b6a'
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('insurance_cards',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('patient_id', sa.String(length=32), nullable=False),
        sa.Column('front_image_url', sa.Text(), nullable=True),
        sa.Column('back_image_url', sa.Text(), nullable=True),
        sa.Column('insurance_company', sa.String(length=200), nullable=True),
        sa.Column('policy_number', sa.String(length=255), nullable=True), # Encrypted
        sa.Column('group_number', sa.String(length=100), nullable=True),
        sa.Column('member_name', sa.String(length=200), nullable=True),
        sa.Column('member_id', sa.String(length=255), nullable=True), # Encrypted
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], name='fk_insurance_cards_patient_id'),
        sa.PrimaryKeyConstraint('id', name='pk_insurance_cards'),
    )
    op.create_index(op.f('ix_insurance_cards_patient_id'), 'insurance_cards', ['patient_id'], unique=False)
    op.create_index(op.f('ix_insurance_cards_is_active'), 'insurance_cards', ['is_active'], unique=False)

    op.create_table('insurance_updates',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('patient_id', sa.String(length=32), nullable=False),
        sa.Column('insurance_card_id', sa.String(length=32), nullable=True),
        sa.Column('update_type', sa.String(length=50), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], name='fk_insurance_updates_patient_id'),
        sa.ForeignKeyConstraint(['insurance_card_id'], ['insurance_cards.id'], name='fk_insurance_updates_card_id'),
        sa.PrimaryKeyConstraint('id', name='pk_insurance_updates'),
    )

    op.create_table('patient_actions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('patient_id', sa.String(length=32), nullable=True),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('resource', sa.String(length=100), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=100), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], name='fk_patient_actions_patient_id'),
        sa.PrimaryKeyConstraint('id', name='pk_patient_actions'),
    )
    op.create_index(op.f('ix_patient_actions_id'), 'patient_actions', ['id'], unique=False)
    op.create_index(op.f('ix_patient_actions_created_at'), 'patient_actions', ['created_at'], unique=False)
    op.create_index(op.f('ix_patient_actions_patient_id'), 'patient_actions', ['patient_id'], unique=False)
    op.create_index(op.f('ix_patient_actions_action'), 'patient_actions', ['action'], unique=False)
    op.create_index(op.f('ix_patient_actions_resource'), 'patient_actions', ['resource'], unique=False)
    op.create_index(op.f('ix_patient_actions_resource_id'), 'patient_actions', ['resource_id'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_patient_actions_resource_id'), table_name='patient_actions')
    op.drop_index(op.f('ix_patient_actions_resource'), table_name='patient_actions')
    op.drop_index(op.f('ix_patient_actions_action'), table_name='patient_actions')
    op.drop_index(op.f('ix_patient_actions_patient_id'), table_name='patient_actions')
    op.drop_index(op.f('ix_patient_actions_created_at'), table_name='patient_actions')
    op.drop_index(op.f('ix_patient_actions_id'), table_name='patient_actions')
    op.drop_table('patient_actions')

    op.drop_table('insurance_updates')

    op.drop_index(op.f('ix_insurance_cards_is_active'), table_name='insurance_cards')
    op.drop_index(op.f('ix_insurance_cards_patient_id'), table_name='insurance_cards')
    op.drop_table('insurance_cards')
