"""initial pipeline schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

JsonType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade():
    op.create_table(
        'projects',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('niche_preset', sa.String(), nullable=True),
        sa.Column('target_minutes', sa.Integer(), nullable=False),
        sa.Column('template_id', sa.String(), nullable=True),
        sa.Column('visual_preset_id', sa.String(), nullable=True),
        sa.Column('voice_profile_id', sa.String(), nullable=True),
        sa.Column('image_density', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('timeline_path', sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_user_id', 'projects', ['user_id'], unique=False)

    op.create_table(
        'project_inputs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('project_id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('content_text', sa.Text(), nullable=True),
        sa.Column('storage_path', sa.String(), nullable=True),
        sa.Column('meta', JsonType, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_project_inputs_project_id', 'project_inputs', ['project_id'], unique=False)

    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('project_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('cost_credits_reserved', sa.Integer(), nullable=False),
        sa.Column('cost_credits_final', sa.Integer(), nullable=True),
        sa.Column('credit_state', sa.String(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('dlq_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dlq_reason', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('failed_step', sa.String(), nullable=True),
        sa.Column('available_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('claimed_by', sa.String(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_requested_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('jobs', schema=None) as batch_op:
        batch_op.create_index('ix_jobs_project_id', ['project_id'], unique=False)
        batch_op.create_index('ix_jobs_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_jobs_status', ['status'], unique=False)
        batch_op.create_index('ix_jobs_dlq_at', ['dlq_at'], unique=False)
        batch_op.create_index('ix_jobs_available_at', ['available_at'], unique=False)
    op.create_index(
        'ix_jobs_poll', 'jobs', ['status', 'available_at'], unique=False,
        postgresql_where=sa.text("status = 'QUEUED'")
    )

    op.create_table(
        'job_leases',
        sa.Column('job_id', sa.Uuid(), nullable=False),
        sa.Column('worker_id', sa.String(), nullable=False),
        sa.Column('lease_token', sa.Uuid(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_heartbeat_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('job_id'),
    )
    op.create_index('ix_job_leases_expires_at', 'job_leases', ['expires_at'], unique=False)

    op.create_table(
        'job_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('stage', sa.String(), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('meta', JsonType, nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_events_job_id', 'job_events', ['job_id'], unique=False)

    op.create_table(
        'job_checkpoints',
        sa.Column('job_id', sa.Uuid(), nullable=False),
        sa.Column('last_completed_step', sa.String(), nullable=False),
        sa.Column('artifacts', JsonType, nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('saved_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('job_id'),
    )

    op.create_table(
        'job_checkpoint_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Uuid(), nullable=False),
        sa.Column('step', sa.String(), nullable=False),
        sa.Column('artifacts', JsonType, nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('saved_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_checkpoint_history_job_id', 'job_checkpoint_history', ['job_id'], unique=False)

    op.create_table(
        'credit_ledger',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('job_id', sa.Uuid(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('note', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('credit_ledger', schema=None) as batch_op:
        batch_op.create_index('ix_credit_ledger_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_credit_ledger_job_id', ['job_id'], unique=False)

    op.create_table(
        'assets',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('job_id', sa.Uuid(), nullable=False),
        sa.Column('project_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('path', sa.String(), nullable=False),
        sa.Column('meta', JsonType, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_id', 'path', name='uq_assets_job_path'),
    )
    with op.batch_alter_table('assets', schema=None) as batch_op:
        batch_op.create_index('ix_assets_job_id', ['job_id'], unique=False)
        batch_op.create_index('ix_assets_project_id', ['project_id'], unique=False)


def downgrade():
    op.drop_table('assets')
    op.drop_table('credit_ledger')
    op.drop_table('job_checkpoint_history')
    op.drop_table('job_checkpoints')
    op.drop_table('job_events')
    op.drop_table('job_leases')
    op.drop_index('ix_jobs_poll', table_name='jobs')
    op.drop_table('jobs')
    op.drop_table('project_inputs')
    op.drop_table('projects')
