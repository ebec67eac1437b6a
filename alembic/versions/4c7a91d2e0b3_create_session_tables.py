"""create session_events and session_checkpoints

Revision ID: 4c7a91d2e0b3
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c7a91d2e0b3'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'session_events',
        sa.Column('session_id', sa.String(length=64), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('participant_id', sa.String(length=64), nullable=True),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('arrived_at', sa.Float(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('session_id', 'seq'),
    )
    op.create_table(
        'session_checkpoints',
        sa.Column('session_id', sa.String(length=64), nullable=False),
        sa.Column('clock', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('state', sa.Text(), nullable=False),
        sa.Column('checksum', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('session_id', 'clock'),
    )


def downgrade():
    op.drop_table('session_checkpoints')
    op.drop_table('session_events')
