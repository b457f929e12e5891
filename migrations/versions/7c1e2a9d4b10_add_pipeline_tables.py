"""add pipeline stages, deals and deal activities

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-18 09:12:44.103512

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c1e2a9d4b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('pipeline_stages',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('color', sa.String(length=20), nullable=True),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.Column('win_probability', sa.Integer(), nullable=False),
        sa.Column('rotting_days', sa.Integer(), nullable=True),
        sa.Column('is_won', sa.Boolean(), nullable=False),
        sa.Column('is_lost', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint('NOT (is_won AND is_lost)', name='ck_pipeline_stages_single_outcome'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('deals',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('value', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('organization', sa.String(length=255), nullable=True),
        sa.Column('contact_name', sa.String(length=255), nullable=True),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('contact_phone', sa.String(length=50), nullable=True),
        sa.Column('expected_close_date', sa.Date(), nullable=True),
        sa.Column('owner_id', sa.String(length=36), nullable=True),
        sa.Column('lead_id', sa.String(length=36), nullable=True),
        sa.Column('customer_id', sa.String(length=36), nullable=True),
        sa.Column('audit_id', sa.String(length=36), nullable=True),
        sa.Column('quote_id', sa.String(length=36), nullable=True),
        sa.Column('stage_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('win_probability', sa.Integer(), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('won_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('won_notes', sa.Text(), nullable=True),
        sa.Column('lost_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lost_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['stage_id'], ['pipeline_stages.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_deals_owner_id', 'deals', ['owner_id'], unique=False)
    op.create_index('ix_deals_stage_id', 'deals', ['stage_id'], unique=False)
    op.create_index('ix_deals_status', 'deals', ['status'], unique=False)

    op.create_table('deal_activities',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('deal_id', sa.String(length=36), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('activity_type', sa.String(length=50), nullable=False),
        sa.Column('subject', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('from_stage_id', sa.String(length=36), nullable=True),
        sa.Column('to_stage_id', sa.String(length=36), nullable=True),
        sa.Column('created_by', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['from_stage_id'], ['pipeline_stages.id'], ),
        sa.ForeignKeyConstraint(['to_stage_id'], ['pipeline_stages.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('deal_id', 'sequence', name='uq_deal_activities_deal_sequence')
    )
    op.create_index('ix_deal_activities_deal_id', 'deal_activities', ['deal_id'], unique=False)


def downgrade():
    op.drop_index('ix_deal_activities_deal_id', table_name='deal_activities')
    op.drop_table('deal_activities')

    op.drop_index('ix_deals_status', table_name='deals')
    op.drop_index('ix_deals_stage_id', table_name='deals')
    op.drop_index('ix_deals_owner_id', table_name='deals')
    op.drop_table('deals')

    op.drop_table('pipeline_stages')
