"""initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates the customer, catalog, quote, order, job and audit tables for JobFlow OS.
Statuses are plain strings; the application enums define the allowed values.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Users
    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False, index=True),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255)),
        sa.Column('role', sa.String(20), nullable=False, server_default='viewer'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_login', sa.DateTime(timezone=True)),
    )

    # Customers
    op.create_table('customers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(255), nullable=False, index=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False, index=True),
        sa.Column('phone', sa.String(50)),
        sa.Column('contact_person', sa.String(255)),
        sa.Column('address', sa.Text()),
        sa.Column('payment_terms', sa.String(30), server_default='THIRTY_DAYS'),
        sa.Column('status', sa.String(20), server_default='ACTIVE'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Suppliers and materials
    op.create_table('suppliers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('phone', sa.String(50)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('materials',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('code', sa.String(100), unique=True, nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('unit', sa.String(30), server_default='unit'),
        sa.Column('unit_price', sa.Float(), nullable=False, server_default='0'),
        sa.Column('current_stock', sa.Float(), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Float(), server_default='0'),
        sa.Column('reorder_point', sa.Float(), server_default='0'),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Quote reference sequence
    op.create_table('company_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quote_reference_prefix', sa.String(20), nullable=False, server_default='QR'),
        sa.Column('last_quote_reference_seq', sa.Integer(), nullable=False, server_default='0'),
    )

    # Quotes
    op.create_table('quotes',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('quote_number', sa.String(60), nullable=False, unique=True),
        sa.Column('quote_reference', sa.String(50), nullable=False, index=True),
        sa.Column('version_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_latest_version', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('parent_quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('change_reason', sa.Text()),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('notes', sa.Text()),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT', index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('customer_reference', sa.String(255)),
        sa.Column('contact_person', sa.String(255)),
        sa.Column('contact_email', sa.String(255)),
        sa.Column('contact_phone', sa.String(50)),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        sa.Column('sent_at', sa.DateTime(timezone=True)),
        sa.Column('total_amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('quote_reference', 'version_number', name='uq_quote_reference_version'),
    )
    # At most one latest version per reference
    op.create_index(
        'uq_quote_reference_latest', 'quotes', ['quote_reference'],
        unique=True,
        postgresql_where=sa.text('is_latest_version'),
        sqlite_where=sa.text('is_latest_version = 1'),
    )

    op.create_table('quote_line_items',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('material_id', sa.Integer(), sa.ForeignKey('materials.id'), nullable=True),
    )

    # Jobs come before orders: orders.job_id references jobs
    op.create_table('jobs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT', index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True)),
        sa.Column('expected_end_date', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table('orders',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('project_title', sa.String(500), nullable=False),
        sa.Column('quote_ref', sa.String(60), index=True),
        sa.Column('order_type', sa.String(30), server_default='CUSTOMER_LINKED'),
        sa.Column('status', sa.String(30), nullable=False, server_default='DRAFT', index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=False),
        sa.Column('contact_person', sa.String(255)),
        sa.Column('contact_phone', sa.String(50)),
        sa.Column('contact_email', sa.String(255)),
        sa.Column('project_value', sa.Float(), server_default='0'),
        sa.Column('lead_time_weeks', sa.Integer()),
        sa.Column('items', sa.JSON()),
        sa.Column('currency', sa.String(3), server_default='GBP'),
        sa.Column('vat_rate', sa.Float(), server_default='0'),
        sa.Column('sub_total', sa.Float(), server_default='0'),
        sa.Column('total_tax', sa.Float(), server_default='0'),
        sa.Column('total_amount', sa.Float(), server_default='0'),
        sa.Column('payment_terms', sa.String(30), server_default='THIRTY_DAYS'),
        sa.Column('notes', sa.Text()),
        sa.Column('source_quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id'), nullable=True, index=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('project_owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table('job_materials',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('material_id', sa.Integer(), sa.ForeignKey('materials.id'), nullable=False),
        sa.Column('quantity_needed', sa.Float(), nullable=False),
        sa.Column('quantity_used', sa.Float(), nullable=False, server_default='0'),
        sa.Column('unit_cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('job_id', 'material_id', name='uq_job_material'),
    )

    op.create_table('job_costs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('category', sa.String(50), server_default='OTHER'),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('cost_date', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Audit trail
    op.create_table('audit_records',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('change_type', sa.String(50), nullable=False, index=True),
        sa.Column('actor_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('reason', sa.Text()),
        sa.Column('entity_status', sa.String(30)),
        sa.Column('snapshot', sa.JSON()),
        sa.Column('detail', sa.JSON()),
        sa.Column('ip_address', sa.String(50)),
        sa.Column('user_agent', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )
    op.create_index('ix_audit_records_entity', 'audit_records', ['entity_type', 'entity_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_audit_records_entity', table_name='audit_records')
    op.drop_table('audit_records')
    op.drop_table('job_costs')
    op.drop_table('job_materials')
    op.drop_table('orders')
    op.drop_table('jobs')
    op.drop_table('quote_line_items')
    op.drop_index('uq_quote_reference_latest', table_name='quotes')
    op.drop_table('quotes')
    op.drop_table('company_settings')
    op.drop_table('materials')
    op.drop_table('suppliers')
    op.drop_table('customers')
    op.drop_table('users')
