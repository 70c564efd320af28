"""SQLAlchemy models."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATE_DOCUMENT_ID = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateDocument(Base):
    """Singleton row holding positions, session and cooldowns as one JSON payload."""

    __tablename__ = "state_document"

    id = Column(Integer, primary_key=True)
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class ClosedTradeRecord(Base):
    __tablename__ = "closed_trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, default="")
    entry_price = Column(Float, nullable=False)
    entry_time = Column(DateTime(timezone=True), nullable=False)
    initial_size = Column(Float, nullable=False, default=0.0)
    exit_price = Column(Float, nullable=False)
    exit_reason = Column(String, nullable=False)
    exit_time = Column(DateTime(timezone=True), nullable=False, index=True)
    sell_percent = Column(Float, nullable=False, default=100.0)
    notional_sold = Column(Float, nullable=False, default=0.0)
    pnl = Column(Float, nullable=False, default=0.0)
    pnl_percent = Column(Float, nullable=False, default=0.0)
    hold_seconds = Column(Float, nullable=False, default=0.0)
    partial = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, nullable=False, default=list)
    tx_id = Column(String, nullable=False, default="")
