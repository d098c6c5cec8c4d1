"""Codification schema: taxonomy, aliases, extractions, categories, activity

Revision ID: 001_codification_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_codification_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Canonical taxonomy (append-only; is_active=false instead of DELETE)
    op.create_table(
        'item_codes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('code', sa.String(200), nullable=False),
        sa.Column('display_name', sa.String(200), nullable=False),
        sa.Column('category', sa.String(100), nullable=False),
        sa.Column('data_type', sa.String(20), nullable=False),  # currency, number, percentage, string
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('is_system_default', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint(
            "data_type IN ('currency', 'number', 'percentage', 'string')",
            name='ck_item_codes_data_type',
        ),
    )
    op.create_unique_constraint('uq_item_codes_code', 'item_codes', ['code'])
    op.create_index('ix_item_codes_category', 'item_codes', ['category'])

    # Learned dictionary: many rows per normalized alias allowed, index build picks one
    op.create_table(
        'item_code_aliases',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('alias_raw', sa.String(500), nullable=False),
        sa.Column('alias_normalized', sa.String(500), nullable=False),
        sa.Column('canonical_code', sa.String(200), nullable=False),
        sa.Column('canonical_code_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('item_codes.id'), nullable=False),
        sa.Column('confidence', sa.Float, nullable=False, server_default='1.0'),
        sa.Column('source', sa.String(20), nullable=False),  # user_confirmed, manual, ai_suggested
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('confidence >= 0 AND confidence <= 1', name='ck_item_code_aliases_confidence'),
        sa.CheckConstraint(
            "source IN ('user_confirmed', 'manual', 'ai_suggested')",
            name='ck_item_code_aliases_source',
        ),
    )
    op.create_index('ix_item_code_aliases_alias_normalized', 'item_code_aliases', ['alias_normalized'])
    op.create_index('ix_item_code_aliases_canonical_code_id', 'item_code_aliases', ['canonical_code_id'])

    # One record per document; items held as a JSON list
    op.create_table(
        'codified_extractions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('document_id', sa.String(200), nullable=False),
        sa.Column('project_id', sa.String(200)),
        sa.Column('items', postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('mapping_stats', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('fast_pass_completed', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('smart_pass_completed', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('is_fully_confirmed', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('codified_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('smart_pass_at', sa.TIMESTAMP(timezone=True)),
        sa.Column('confirmed_at', sa.TIMESTAMP(timezone=True)),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),  # optimistic lock
    )
    op.create_unique_constraint('uq_codified_extractions_document_id', 'codified_extractions', ['document_id'])
    op.create_index('ix_codified_extractions_project_id', 'codified_extractions', ['project_id'])

    op.create_table(
        'item_categories',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('normalized_name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('examples', postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('display_order', sa.Integer),
        sa.Column('is_system', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_unique_constraint('uq_item_categories_normalized_name', 'item_categories', ['normalized_name'])

    # Audit trail written by the codification_events worker
    op.create_table(
        'codification_activity',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('extraction_id', postgresql.UUID(as_uuid=True)),
        sa.Column('payload', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_codification_activity_extraction_id', 'codification_activity', ['extraction_id'])
    op.create_index('ix_codification_activity_event_type', 'codification_activity', ['event_type'])


def downgrade():
    op.drop_table('codification_activity')
    op.drop_table('item_categories')
    op.drop_table('codified_extractions')
    op.drop_table('item_code_aliases')
    op.drop_table('item_codes')
