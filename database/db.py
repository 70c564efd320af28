"""SQL storage backend for the state store."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import timezone
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database.models import STATE_DOCUMENT_ID, Base, ClosedTradeRecord, StateDocument
from trading.auto_trader_state import StoreState, state_from_payload, state_to_payload
from trading.models import ClosedTrade
from trading.state_store import StateBackend, StateTransaction

logger = logging.getLogger(__name__)


def _aware(value):
    # SQLite drops tzinfo on the way back out.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record_from_trade(trade: ClosedTrade) -> ClosedTradeRecord:
    return ClosedTradeRecord(
        token_id=trade.token_id,
        symbol=trade.symbol,
        entry_price=trade.entry_price,
        entry_time=trade.entry_time,
        initial_size=trade.initial_size,
        exit_price=trade.exit_price,
        exit_reason=trade.exit_reason,
        exit_time=trade.exit_time,
        sell_percent=trade.sell_percent,
        notional_sold=trade.notional_sold,
        pnl=trade.pnl,
        pnl_percent=trade.pnl_percent,
        hold_seconds=trade.hold_seconds,
        partial=trade.partial,
        tags=list(trade.tags),
        tx_id=trade.tx_id,
    )


def _trade_from_record(row: ClosedTradeRecord) -> ClosedTrade:
    return ClosedTrade(
        token_id=row.token_id,
        symbol=row.symbol,
        entry_price=row.entry_price,
        entry_time=_aware(row.entry_time),
        initial_size=row.initial_size,
        exit_price=row.exit_price,
        exit_reason=row.exit_reason,
        exit_time=_aware(row.exit_time),
        sell_percent=row.sell_percent,
        notional_sold=row.notional_sold,
        pnl=row.pnl,
        pnl_percent=row.pnl_percent,
        hold_seconds=row.hold_seconds,
        partial=bool(row.partial),
        tags=tuple(row.tags or ()),
        tx_id=row.tx_id or "",
    )


class _SqlTransaction(StateTransaction):
    def __init__(self, db: Session) -> None:
        self._db = db
        self._doc: Optional[StateDocument] = None

    def _locked_doc(self) -> Optional[StateDocument]:
        if self._doc is None:
            stmt = select(StateDocument).where(StateDocument.id == STATE_DOCUMENT_ID).with_for_update()
            self._doc = self._db.execute(stmt).scalar_one_or_none()
        return self._doc

    def load(self) -> StoreState:
        doc = self._locked_doc()
        return state_from_payload(doc.payload if doc is not None else None)

    def commit(self, state: StoreState, new_trades: Sequence[ClosedTrade] = ()) -> None:
        doc = self._locked_doc()
        payload = state_to_payload(state)
        if doc is None:
            self._doc = StateDocument(id=STATE_DOCUMENT_ID, payload=payload)
            self._db.add(self._doc)
        else:
            doc.payload = payload
        self._db.add_all(_record_from_trade(t) for t in new_trades)


class SqlBackend(StateBackend):
    """State document row and closed-trade rows, committed together in one transaction.

    A transaction locks the state row (`SELECT ... FOR UPDATE`, or `BEGIN IMMEDIATE`
    on SQLite, which has no row locks) until it commits or rolls back.
    """

    def __init__(self, database_url: str) -> None:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        self.engine = create_engine(database_url, future=True)
        if self.engine.dialect.name == "sqlite":
            _use_immediate_transactions(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(bind=self.engine)
        self._ensure_state_row()

    def _db(self) -> Session:
        return self.SessionLocal()

    def _ensure_state_row(self) -> None:
        # FOR UPDATE only locks rows that exist.
        try:
            with self._db() as db, db.begin():
                if db.get(StateDocument, STATE_DOCUMENT_ID) is None:
                    db.add(StateDocument(id=STATE_DOCUMENT_ID, payload=state_to_payload(StoreState())))
        except IntegrityError:
            logger.info("STATE_INIT state row created by another process")

    @contextmanager
    def transaction(self) -> Iterator[StateTransaction]:
        with self._db() as db, db.begin():
            yield _SqlTransaction(db)

    def load_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        with self._db() as db:
            stmt = select(ClosedTradeRecord).order_by(ClosedTradeRecord.id.desc())
            if limit:
                stmt = stmt.limit(limit)
            rows = db.execute(stmt).scalars().all()
            return [_trade_from_record(r) for r in reversed(rows)]

    def close(self) -> None:
        self.engine.dispose()


def _use_immediate_transactions(engine: Engine) -> None:
    """Take SQLite's write lock at BEGIN so load and commit cannot interleave across processes."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
