"""Trade ledger: append-only record of operator trade intents."""

from __future__ import annotations

import math
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from copy_trading.db.engine import Database
from copy_trading.db.models import TradeRow, as_utc, new_id, utcnow
from copy_trading.errors import InvalidParameters, InvalidTransition, TradeNotFound
from copy_trading.ledger.schemas import parse_entry_parameters, parse_kind
from copy_trading.registry.operators import OperatorRegistry
from copy_trading.types import TradeIntent, TradeKind, TradePage, TradeStatus
from copy_trading.utils.logging import get_logger, log_trade_event


class TradeLedger:
    """Owns TradeIntent rows and their pending -> active -> closed lifecycle."""

    def __init__(self, database: Database, operators: OperatorRegistry) -> None:
        self._db = database
        self._operators = operators
        self._logger = get_logger("copy_trading.ledger.trades")

    def create_trade(
        self,
        operator_id: str,
        kind: TradeKind | str,
        confidence: float,
        entry_parameters: dict[str, Any],
    ) -> TradeIntent:
        """Record a new signal with status=pending.

        Raises ``InvalidOperator`` for unknown/inactive operators and
        ``InvalidParameters`` when the payload does not match ``kind``.
        """
        trade_kind = parse_kind(kind)
        if not isinstance(confidence, (int, float)) or not math.isfinite(confidence):
            raise InvalidParameters(f"confidence_not_a_number: {confidence!r}")
        if not 0.0 <= confidence <= 100.0:
            raise InvalidParameters(f"confidence_out_of_range: {confidence} (0..100)")
        params = parse_entry_parameters(trade_kind, entry_parameters)
        self._operators.require_active(operator_id)

        with self._db.session() as session:
            row = TradeRow(
                id=new_id(),
                operator_id=operator_id,
                kind=trade_kind.value,
                confidence=float(confidence),
                entry_parameters=params.model_dump(),
                status=TradeStatus.PENDING.value,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            trade = _to_trade(row)

        log_trade_event(
            self._logger,
            trade_id=trade.id,
            operator_id=operator_id,
            event_type="created",
            kind=trade.kind.value,
            confidence=trade.confidence,
        )
        return trade

    def get_trade(self, trade_id: str) -> TradeIntent:
        with self._db.session() as session:
            return _to_trade(_load(session, trade_id))

    def mark_active(self, trade_id: str) -> TradeIntent:
        """pending -> active. A second call on an active trade is a no-op."""
        with self._db.session() as session:
            row = _load(session, trade_id, for_update=True)
            current = TradeStatus(row.status)
            if current == TradeStatus.ACTIVE:
                return _to_trade(row)
            if current != TradeStatus.PENDING:
                raise InvalidTransition(f"trade {trade_id}: {current.value} -> active")
            row.status = TradeStatus.ACTIVE.value
            session.flush()
            trade = _to_trade(row)
        log_trade_event(
            self._logger, trade_id=trade_id, operator_id=trade.operator_id, event_type="activated"
        )
        return trade

    def mark_failed(self, trade_id: str) -> TradeIntent:
        """pending -> failed, for a signal that must never be dispatched."""
        with self._db.session() as session:
            row = _load(session, trade_id, for_update=True)
            current = TradeStatus(row.status)
            if current != TradeStatus.PENDING:
                raise InvalidTransition(f"trade {trade_id}: {current.value} -> failed")
            row.status = TradeStatus.FAILED.value
            session.flush()
            trade = _to_trade(row)
        log_trade_event(
            self._logger, trade_id=trade_id, operator_id=trade.operator_id, event_type="failed"
        )
        return trade

    def close_trade(
        self, trade_id: str, exit_parameters: dict[str, Any] | None = None
    ) -> TradeIntent:
        """active -> closed; sets closed_at. Immutable afterwards."""
        with self._db.session() as session:
            row = _load(session, trade_id, for_update=True)
            current = TradeStatus(row.status)
            if current != TradeStatus.ACTIVE:
                raise InvalidTransition(f"trade {trade_id}: {current.value} -> closed")
            row.status = TradeStatus.CLOSED.value
            row.closed_at = utcnow()
            row.exit_parameters = dict(exit_parameters) if exit_parameters else None
            session.flush()
            trade = _to_trade(row)
        log_trade_event(
            self._logger, trade_id=trade_id, operator_id=trade.operator_id, event_type="closed"
        )
        return trade

    def get_active_trades_for_operator(self, operator_id: str) -> list[TradeIntent]:
        stmt = (
            select(TradeRow)
            .where(
                TradeRow.operator_id == operator_id,
                TradeRow.status == TradeStatus.ACTIVE.value,
            )
            .order_by(TradeRow.created_at.desc())
        )
        with self._db.session() as session:
            return [_to_trade(row) for row in session.scalars(stmt)]

    def list_trades(
        self,
        *,
        operator_id: str | None = None,
        status: TradeStatus | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> TradePage:
        """Trade history, newest first."""
        if page < 1 or limit < 1:
            raise InvalidParameters("page_and_limit_must_be_positive")
        conditions = []
        if operator_id is not None:
            conditions.append(TradeRow.operator_id == operator_id)
        if status is not None:
            conditions.append(TradeRow.status == TradeStatus(status).value)

        with self._db.session() as session:
            total = session.scalar(select(func.count(TradeRow.id)).where(*conditions)) or 0
            rows = session.scalars(
                select(TradeRow)
                .where(*conditions)
                .order_by(TradeRow.created_at.desc(), TradeRow.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            trades = [_to_trade(row) for row in rows]
        return TradePage(trades=trades, page=page, limit=limit, total=int(total))


def _load(session: Session, trade_id: str, *, for_update: bool = False) -> TradeRow:
    row = session.get(TradeRow, trade_id, with_for_update=for_update or None)
    if row is None:
        raise TradeNotFound(f"unknown_trade: {trade_id}")
    return row


def _to_trade(row: TradeRow) -> TradeIntent:
    return TradeIntent(
        id=row.id,
        operator_id=row.operator_id,
        kind=TradeKind(row.kind),
        confidence=row.confidence,
        entry_parameters=dict(row.entry_parameters),
        status=TradeStatus(row.status),
        created_at=as_utc(row.created_at),  # type: ignore[arg-type]
        closed_at=as_utc(row.closed_at),
        exit_parameters=dict(row.exit_parameters) if row.exit_parameters else None,
    )
