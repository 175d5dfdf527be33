"""Initial schema

Revision ID: 0001_initial_schema
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    # Collaborator tables (owned by the CRUD service, read by the core)
    op.create_table(
        'hospitals',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_id', sa.Uuid(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('blood_thresholds', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('role', sa.String(32), nullable=False),
        sa.Column('hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_hospital_id', 'users', ['hospital_id'])

    op.create_table(
        'donors',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id'), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('phone', sa.String(32), nullable=False, server_default=''),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('blood_group', sa.String(32), nullable=False),
        sa.Column('is_eligible', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_donation_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_donations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
    )
    op.create_index('ix_donors_hospital_id', 'donors', ['hospital_id'])
    op.create_index('ix_donors_blood_group', 'donors', ['blood_group'])

    op.create_table(
        'blood_units',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('bag_id', sa.String(64), nullable=False),
        sa.Column('blood_group', sa.String(32), nullable=False),
        sa.Column('donor_id', sa.Uuid(), sa.ForeignKey('donors.id'), nullable=False),
        sa.Column('hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id'), nullable=False),
        sa.Column('collection_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('test_results', JSONB, nullable=False),
        sa.Column('storage_location', sa.String(128), nullable=True),
        sa.Column('storage_temperature', sa.Float(), nullable=True),
        sa.Column('storage_shelf', sa.String(64), nullable=True),
        sa.Column('rack_number', sa.String(64), nullable=True),
        sa.Column('movement_history', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('volume', sa.Float(), nullable=False, server_default='450'),
        sa.Column('reservation_id', sa.Uuid(), nullable=True),
        sa.Column('issued_to', sa.Uuid(), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('issued_by', sa.Uuid(), nullable=True),
        sa.Column('disposal_reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_blood_units_bag_id', 'blood_units', ['bag_id'], unique=True)
    op.create_index('ix_blood_units_reservation_id', 'blood_units', ['reservation_id'])
    op.create_index('ix_blood_units_stock', 'blood_units', ['hospital_id', 'blood_group', 'status', 'expiry_date'])

    op.create_table(
        'blood_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('request_code', sa.String(64), nullable=False, unique=True),
        sa.Column('hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id'), nullable=False),
        sa.Column('requested_by', sa.Uuid(), nullable=False),
        sa.Column('patient_name', sa.String(255), nullable=False),
        sa.Column('blood_group', sa.String(32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('urgency', sa.String(32), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('required_by', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('approved_by', sa.Uuid(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_reason', sa.Text(), nullable=True),
        sa.Column('rejected_by', sa.Uuid(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reserved_units', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('fulfilled_units', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('fulfilled_by', sa.Uuid(), nullable=True),
        sa.Column('fulfilled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.Uuid(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('quantity > 0', name='ck_blood_requests_quantity_positive'),
    )
    op.create_index('ix_blood_requests_hospital_id', 'blood_requests', ['hospital_id'])
    op.create_index('ix_blood_requests_status', 'blood_requests', ['status'])

    op.create_table(
        'transfer_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('from_hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id'), nullable=False),
        sa.Column('to_hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id'), nullable=False),
        sa.Column('requested_by', sa.Uuid(), nullable=False),
        sa.Column('blood_group', sa.String(32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('urgency', sa.String(32), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('rejected_reason', sa.Text(), nullable=True),
        sa.Column('approved_by', sa.Uuid(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reserved_units', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('quantity > 0', name='ck_transfer_requests_quantity_positive'),
    )
    op.create_index('ix_transfer_requests_from_hospital_id', 'transfer_requests', ['from_hospital_id'])
    op.create_index('ix_transfer_requests_to_hospital_id', 'transfer_requests', ['to_hospital_id'])
    op.create_index('ix_transfer_requests_status', 'transfer_requests', ['status'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('recipient_id', sa.Uuid(), nullable=False),
        sa.Column('recipient_model', sa.String(32), nullable=False),
        sa.Column('hospital_id', sa.Uuid(), nullable=True),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('priority', sa.String(32), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('action_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('action_url', sa.String(255), nullable=True),
        sa.Column('action_text', sa.String(100), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('metadata', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_recipient_created', 'notifications', ['recipient_id', 'created_at'])
    op.create_index('ix_notifications_recipient_read', 'notifications', ['recipient_id', 'read'])
    op.create_index('ix_notifications_hospital_id', 'notifications', ['hospital_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])
    op.create_index('ix_notifications_expires_at', 'notifications', ['expires_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('entity_type', sa.String(64), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('hospital_id', sa.Uuid(), nullable=True),
        sa.Column('changes', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_logs_hospital_created', 'audit_logs', ['hospital_id', 'created_at'])


def downgrade() -> None:
    for table in (
        'audit_logs', 'notifications', 'transfer_requests', 'blood_requests',
        'blood_units', 'donors', 'users', 'hospitals',
    ):
        op.drop_table(table)
