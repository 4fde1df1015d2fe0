"""
Backtest result tables, identical in the main and archive databases.

Tables:
- MetadataRow: one backtest run, keyed by its content hash
- SignalRow: signals emitted by a run (cascade-deleted with its metadata)
- FillRow: simulated fills of a run (cascade-deleted with its metadata)

Rows are written by an upstream producer; this package only moves them
between databases and deletes them.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB

from pgcleanup.database import Base
from pgcleanup.utils.timeutil import utcnow


class MetadataRow(Base):
    """Parent row; `hash` is the primary key referenced by signals and fills."""

    __tablename__ = "metadata"

    hash = Column(String(64), primary_key=True)
    created = Column(DateTime, nullable=False, default=utcnow, index=True)
    data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    def __repr__(self) -> str:
        return f"<MetadataRow {self.hash} created={self.created}>"


class SignalRow(Base):
    __tablename__ = "signals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(String(64), ForeignKey("metadata.hash", ondelete="CASCADE"), nullable=False, index=True)
    signal_type = Column(String(50), nullable=True)
    value = Column(Float, nullable=True)
    created = Column(DateTime, nullable=False, default=utcnow, index=True)


class FillRow(Base):
    __tablename__ = "fills"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(String(64), ForeignKey("metadata.hash", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=True)
    price = Column(Float, nullable=True)
    created = Column(DateTime, nullable=False, default=utcnow, index=True)


# -----------------------------------------------------------------------------
# Table ordering
# -----------------------------------------------------------------------------

# Parent before children: archive-side foreign keys mirror the main database
COPY_ORDER = ("metadata", "signals", "fills")

# Children before parent
PURGE_ORDER = tuple(reversed(COPY_ORDER))

TABLES = {
    MetadataRow.__tablename__: MetadataRow.__table__,
    SignalRow.__tablename__: SignalRow.__table__,
    FillRow.__tablename__: FillRow.__table__,
}
