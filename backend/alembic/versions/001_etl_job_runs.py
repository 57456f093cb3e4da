"""Add ETL job runs table

Revision ID: 001_etl_job_runs
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_etl_job_runs'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create etl_job_runs table
    op.create_table(
        'etl_job_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pipeline_id', sa.String(length=255), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.Enum('IDLE', 'RUNNING', 'FAILED', 'COMPLETED', name='etlrunstatus'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('records_processed', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('records_successful', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('records_failed', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('errors', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('extract_ms', sa.Float(), nullable=True),
        sa.Column('transform_ms', sa.Float(), nullable=True),
        sa.Column('load_ms', sa.Float(), nullable=True),
        sa.Column('total_ms', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_etl_job_runs_id'), 'etl_job_runs', ['id'], unique=False)
    op.create_index(op.f('ix_etl_job_runs_pipeline_id'), 'etl_job_runs', ['pipeline_id'], unique=False)
    op.create_index(op.f('ix_etl_job_runs_tenant_id'), 'etl_job_runs', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_etl_job_runs_status'), 'etl_job_runs', ['status'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_etl_job_runs_status'), table_name='etl_job_runs')
    op.drop_index(op.f('ix_etl_job_runs_tenant_id'), table_name='etl_job_runs')
    op.drop_index(op.f('ix_etl_job_runs_pipeline_id'), table_name='etl_job_runs')
    op.drop_index(op.f('ix_etl_job_runs_id'), table_name='etl_job_runs')
    op.drop_table('etl_job_runs')
    op.execute("DROP TYPE IF EXISTS etlrunstatus")
