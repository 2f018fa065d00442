"""add_batch_engine_tables

Revision ID: b7e41c2d9a10
Revises:
Create Date: 2026-10-19 12:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7e41c2d9a10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'batch_executions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('total_items', sa.Integer, nullable=False, server_default='0'),
        sa.Column('succeeded_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('skipped_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('pending_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('config', sa.Text, nullable=True),
        sa.Column('cancel_requested', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('duration_seconds', sa.Integer, nullable=True),
    )
    op.create_index('ix_batch_executions_owner_id', 'batch_executions', ['owner_id'])
    op.create_index('idx_batch_exec_status', 'batch_executions', ['status'])
    op.create_index('idx_batch_exec_created', 'batch_executions', ['created_at'])

    op.create_table(
        'batch_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('batch_executions.id'), nullable=False),
        sa.Column('item_index', sa.Integer, nullable=False),
        sa.Column('prompt', sa.Text, nullable=False),
        sa.Column('reference_assets', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('result_ref', sa.Integer, nullable=True),
        sa.Column('processing_time_ms', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('batch_id', 'item_index', name='uq_batch_item_index'),
    )
    op.create_index('idx_batch_item_batch', 'batch_items', ['batch_id'])
    op.create_index('idx_batch_item_status', 'batch_items', ['status'])

    op.create_table(
        'batch_credentials',
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('batch_executions.id'), primary_key=True),
        sa.Column('ciphertext', sa.LargeBinary, nullable=False),
        sa.Column('nonce', sa.LargeBinary, nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'job_queue',
        sa.Column('item_id', sa.String(36), sa.ForeignKey('batch_items.id'), primary_key=True),
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('batch_executions.id'), nullable=False),
        sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('available_at', sa.DateTime, nullable=False),
        sa.Column('enqueued_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('lease_id', sa.String(36), nullable=True, unique=True),
        sa.Column('leased_by', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime, nullable=True),
    )
    op.create_index('idx_queue_available', 'job_queue', ['available_at'])
    op.create_index('idx_queue_batch', 'job_queue', ['batch_id'])
    op.create_index('idx_queue_lease_expiry', 'job_queue', ['lease_expires_at'])

    op.create_table(
        'result_assets',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('batch_items.id'), nullable=False, unique=True),
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('batch_executions.id'), nullable=False),
        sa.Column('storage_path', sa.String(500), nullable=False),
        sa.Column('content_type', sa.String(100), nullable=False, server_default='image/png'),
        sa.Column('size', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('idx_result_batch', 'result_assets', ['batch_id'])

    op.create_table(
        'system_config',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.Text, nullable=True),
        sa.Column('value_type', sa.String(20), server_default='string'),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('display_order', sa.String(10), server_default='999'),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_by', sa.String(100), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('system_config')

    op.drop_index('idx_result_batch', 'result_assets')
    op.drop_table('result_assets')

    op.drop_index('idx_queue_lease_expiry', 'job_queue')
    op.drop_index('idx_queue_batch', 'job_queue')
    op.drop_index('idx_queue_available', 'job_queue')
    op.drop_table('job_queue')

    op.drop_table('batch_credentials')

    op.drop_index('idx_batch_item_status', 'batch_items')
    op.drop_index('idx_batch_item_batch', 'batch_items')
    op.drop_table('batch_items')

    op.drop_index('idx_batch_exec_created', 'batch_executions')
    op.drop_index('idx_batch_exec_status', 'batch_executions')
    op.drop_index('ix_batch_executions_owner_id', 'batch_executions')
    op.drop_table('batch_executions')
