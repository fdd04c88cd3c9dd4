"""Processing history table

Revision ID: 001_processing_history
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = '001_processing_history'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    # Create processing_history table (only if it doesn't exist)
    if 'processing_history' not in existing_tables:
        op.create_table(
            'processing_history',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('filename', sa.String(length=500), nullable=False),
            sa.Column('status', sa.String(length=32), nullable=False),
            sa.Column('document_count', sa.Integer(), nullable=True),
            sa.Column('needs_review_count', sa.Integer(), nullable=True),
            sa.Column('failed_count', sa.Integer(), nullable=True),
            sa.Column('page_count', sa.Integer(), nullable=True),
            sa.Column('credits', sa.Float(), nullable=True),
            sa.Column('cost', sa.Float(), nullable=True),
            sa.Column('model', sa.String(length=64), nullable=True),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('summary_json', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.text('(datetime(\'now\'))'), nullable=False),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(datetime(\'now\'))'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.Index('ix_processing_history_status', 'status'),
            sa.Index('ix_processing_history_created_at', 'created_at')
        )


def downgrade() -> None:
    op.drop_table('processing_history')
