"""Create backtest schema: metadata, signals and fills.

Applied to both the main and the archive database (`-x db=archive`).

Changes:
- Create the configured schema (PostgreSQL only)
- Create metadata table keyed by run hash
- Create signals and fills tables with ON DELETE CASCADE to metadata
- Index `created` on every table for window scans

Revision ID: 001_create_backtest_schema
Revises:
Create Date: 2024-03-01
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from pgcleanup.config import get_settings


# revision identifiers, used by Alembic.
revision: str = '001_create_backtest_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _schema() -> str | None:
    if op.get_bind().dialect.name != 'postgresql':
        return None
    return get_settings().SCHEMA


def upgrade() -> None:
    """Create schema and tables."""
    schema = _schema()
    if schema:
        op.execute(sa.schema.CreateSchema(schema, if_not_exists=True))

    json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
    fk_target = f'{schema}.metadata.hash' if schema else 'metadata.hash'

    # -------------------------------------------------------------------------
    # 1. metadata
    # -------------------------------------------------------------------------
    print("  Creating metadata table...")

    op.create_table(
        'metadata',
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('created', sa.DateTime(), nullable=False),
        sa.Column('data', json_type, nullable=True),
        sa.PrimaryKeyConstraint('hash'),
        schema=schema,
    )
    op.create_index('ix_metadata_created', 'metadata', ['created'], unique=False, schema=schema)

    # -------------------------------------------------------------------------
    # 2. signals / fills
    # -------------------------------------------------------------------------
    print("  Creating signals and fills tables...")

    op.create_table(
        'signals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('signal_type', sa.String(length=50), nullable=True),
        sa.Column('value', sa.Float(), nullable=True),
        sa.Column('created', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['hash'], [fk_target], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        schema=schema,
    )
    op.create_index('ix_signals_hash', 'signals', ['hash'], unique=False, schema=schema)
    op.create_index('ix_signals_created', 'signals', ['created'], unique=False, schema=schema)

    op.create_table(
        'fills',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('created', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['hash'], [fk_target], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        schema=schema,
    )
    op.create_index('ix_fills_hash', 'fills', ['hash'], unique=False, schema=schema)
    op.create_index('ix_fills_created', 'fills', ['created'], unique=False, schema=schema)

    print("  Created 3 tables and 5 indexes")


def downgrade() -> None:
    """Drop tables (the schema itself is left in place)."""
    schema = _schema()

    op.drop_index('ix_fills_created', table_name='fills', schema=schema)
    op.drop_index('ix_fills_hash', table_name='fills', schema=schema)
    op.drop_table('fills', schema=schema)

    op.drop_index('ix_signals_created', table_name='signals', schema=schema)
    op.drop_index('ix_signals_hash', table_name='signals', schema=schema)
    op.drop_table('signals', schema=schema)

    op.drop_index('ix_metadata_created', table_name='metadata', schema=schema)
    op.drop_table('metadata', schema=schema)
