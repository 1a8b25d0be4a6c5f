############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# 001_generation_jobs.py: Initial database schema migration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Generation jobs table

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'generation_jobs',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('prompt', sa.JSON(), nullable=False),
        sa.Column(
            'state',
            sa.Enum('pending', 'processing', 'completed', 'failed', 'cancelled', name='jobstate'),
            nullable=False,
        ),
        sa.Column('backend_id', sa.String(64), nullable=True),
        sa.Column('backend_prompt_id', sa.String(255), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_generation_jobs_user_id', 'generation_jobs', ['user_id'])
    op.create_index('ix_generation_jobs_state_created', 'generation_jobs', ['state', 'created_at'])
    op.create_index('ix_generation_jobs_user_created', 'generation_jobs', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_generation_jobs_user_created', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_state_created', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_user_id', table_name='generation_jobs')
    op.drop_table('generation_jobs')
    sa.Enum(name='jobstate').drop(op.get_bind(), checkfirst=True)
