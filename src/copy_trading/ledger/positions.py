"""Position ledger: one row per (trade, follower), guarded by a status state machine."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from copy_trading.db.engine import Database
from copy_trading.db.models import PositionRow, TradeRow, as_utc, new_id, utcnow
from copy_trading.errors import (
    InvalidParameters,
    InvalidTransition,
    PositionNotFound,
    TradeNotFound,
)
from copy_trading.types import OPEN_POSITION_STATUSES, FollowerPosition, PositionStatus
from copy_trading.utils.logging import get_logger, log_position_transition

# active -> active records a failed close attempt; nothing ever returns to pending
_TRANSITIONS: dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.PENDING: frozenset({PositionStatus.ACTIVE, PositionStatus.FAILED}),
    PositionStatus.ACTIVE: frozenset(
        {PositionStatus.CLOSED, PositionStatus.FAILED, PositionStatus.ACTIVE}
    ),
    PositionStatus.CLOSED: frozenset(),
    PositionStatus.FAILED: frozenset(),
}

_UPDATABLE_FIELDS = frozenset(
    {
        "actual_amount",
        "entry_tx_ref",
        "exit_tx_ref",
        "realized_pnl",
        "venue_position_ref",
        "filled_quantity",
        "failure_reason",
        "failure_detail",
        "close_error",
        "close_attempts",
    }
)


def is_allowed_transition(current: PositionStatus, target: PositionStatus) -> bool:
    return target in _TRANSITIONS[current]


def count_open_positions(session: Session, follower_id: str, operator_id: str) -> int:
    """Pending/active positions a follower holds on trades of one operator."""
    stmt = (
        select(func.count(PositionRow.id))
        .join(TradeRow, TradeRow.id == PositionRow.trade_id)
        .where(
            PositionRow.follower_id == follower_id,
            TradeRow.operator_id == operator_id,
            PositionRow.status.in_([status.value for status in OPEN_POSITION_STATUSES]),
        )
    )
    return int(session.scalar(stmt) or 0)


class PositionLedger:
    """Durable per-follower positions; never deleted."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._logger = get_logger("copy_trading.ledger.positions")

    def upsert_pending(
        self,
        trade_id: str,
        follower_id: str,
        allocated_amount: float = 0.0,
    ) -> tuple[FollowerPosition, bool]:
        """Create the pending row for (trade, follower) unless it already exists.

        Returns the row and whether this call created it. The UNIQUE
        constraint on (trade_id, follower_id) is the source of truth; the
        lookup first only avoids a failed insert on the common retry path.
        """
        existing = self.find(trade_id, follower_id)
        if existing is not None:
            return existing, False

        try:
            with self._db.session() as session:
                if session.get(TradeRow, trade_id) is None:
                    raise TradeNotFound(f"unknown_trade: {trade_id}")
                now = utcnow()
                row = PositionRow(
                    id=new_id(),
                    trade_id=trade_id,
                    follower_id=follower_id,
                    status=PositionStatus.PENDING.value,
                    allocated_amount=float(allocated_amount),
                    actual_amount=0.0,
                    close_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                position = _to_position(row)
        except IntegrityError:
            existing = self.find(trade_id, follower_id)
            if existing is None:
                raise
            return existing, False

        self._logger.debug(
            "position_created",
            position_id=position.id,
            trade_id=trade_id,
            follower_id=follower_id,
            allocated_amount=position.allocated_amount,
        )
        return position, True

    def update_status(
        self,
        position_id: str,
        status: PositionStatus | str,
        *,
        expected_status: PositionStatus | None = None,
        claimed_by: str | None = None,
        **fields: Any,
    ) -> FollowerPosition:
        """Move a position along the state machine and set the given fields.

        Raises ``InvalidTransition`` for any transition the state machine does
        not list, when the row is no longer in ``expected_status``, or when
        ``claimed_by`` no longer holds the row's lease. Any claim on the row is
        released.
        """
        target = PositionStatus(status)
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidParameters(f"unknown_position_fields: {sorted(unknown)}")

        with self._db.session() as session:
            row = session.get(PositionRow, position_id, with_for_update=True)
            if row is None:
                raise PositionNotFound(f"unknown_position: {position_id}")
            current = PositionStatus(row.status)
            if not is_allowed_transition(current, target):
                raise InvalidTransition(
                    f"position {position_id}: {current.value} -> {target.value}"
                )
            if expected_status is not None and current != expected_status:
                raise InvalidTransition(
                    f"position {position_id}: expected {expected_status.value}, "
                    f"found {current.value}"
                )
            if claimed_by is not None and row.claimed_by != claimed_by:
                raise InvalidTransition(f"position {position_id}: lease lost by {claimed_by}")
            row.status = target.value
            for name, value in fields.items():
                setattr(row, name, value)
            row.claimed_by = None
            row.claimed_at = None
            row.updated_at = utcnow()
            session.flush()
            position = _to_position(row)

        log_position_transition(
            self._logger,
            position_id=position_id,
            from_status=current.value,
            to_status=target.value,
            trade_id=position.trade_id,
            follower_id=position.follower_id,
            failure_reason=position.failure_reason,
        )
        return position

    def claim(
        self,
        position_id: str,
        owner: str,
        *,
        expected_status: PositionStatus,
        ttl_seconds: float,
    ) -> bool:
        """Take an exclusive lease on a row before touching the venue.

        Two concurrent passes over the same trade (duplicate delivery) can
        both see a row as pending; only the one holding the lease executes.
        A lease older than ``ttl_seconds`` is considered abandoned.
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=ttl_seconds)
        stmt = (
            update(PositionRow)
            .where(
                PositionRow.id == position_id,
                PositionRow.status == expected_status.value,
                or_(
                    PositionRow.claimed_by.is_(None),
                    PositionRow.claimed_by == owner,
                    PositionRow.claimed_at < cutoff,
                ),
            )
            .values(claimed_by=owner, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        with self._db.session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    def release(self, position_id: str, owner: str) -> None:
        stmt = (
            update(PositionRow)
            .where(PositionRow.id == position_id, PositionRow.claimed_by == owner)
            .values(claimed_by=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        with self._db.session() as session:
            session.execute(stmt)

    def get_position(self, position_id: str) -> FollowerPosition:
        with self._db.session() as session:
            row = session.get(PositionRow, position_id)
            if row is None:
                raise PositionNotFound(f"unknown_position: {position_id}")
            return _to_position(row)

    def find(self, trade_id: str, follower_id: str) -> FollowerPosition | None:
        stmt = select(PositionRow).where(
            PositionRow.trade_id == trade_id,
            PositionRow.follower_id == follower_id,
        )
        with self._db.session() as session:
            row = session.scalars(stmt).first()
            return _to_position(row) if row is not None else None

    def get_positions_for_trade(
        self,
        trade_id: str,
        status_filter: PositionStatus | Iterable[PositionStatus] | None = None,
    ) -> list[FollowerPosition]:
        stmt = select(PositionRow).where(PositionRow.trade_id == trade_id)
        statuses = _status_values(status_filter)
        if statuses is not None:
            stmt = stmt.where(PositionRow.status.in_(statuses))
        stmt = stmt.order_by(PositionRow.created_at, PositionRow.id)
        with self._db.session() as session:
            return [_to_position(row) for row in session.scalars(stmt)]

    def get_positions_for_follower(
        self,
        follower_id: str,
        status_filter: PositionStatus | Iterable[PositionStatus] | None = None,
        *,
        operator_id: str | None = None,
    ) -> list[FollowerPosition]:
        stmt = select(PositionRow).where(PositionRow.follower_id == follower_id)
        if operator_id is not None:
            stmt = stmt.join(TradeRow, TradeRow.id == PositionRow.trade_id).where(
                TradeRow.operator_id == operator_id
            )
        statuses = _status_values(status_filter)
        if statuses is not None:
            stmt = stmt.where(PositionRow.status.in_(statuses))
        stmt = stmt.order_by(PositionRow.created_at.desc())
        with self._db.session() as session:
            return [_to_position(row) for row in session.scalars(stmt)]

    def count_open_for_pair(self, follower_id: str, operator_id: str) -> int:
        with self._db.session() as session:
            return count_open_positions(session, follower_id, operator_id)


def _status_values(
    status_filter: PositionStatus | Iterable[PositionStatus] | None,
) -> list[str] | None:
    if status_filter is None:
        return None
    if isinstance(status_filter, (PositionStatus, str)):
        return [PositionStatus(status_filter).value]
    return [PositionStatus(status).value for status in status_filter]


def _to_position(row: PositionRow) -> FollowerPosition:
    return FollowerPosition(
        id=row.id,
        trade_id=row.trade_id,
        follower_id=row.follower_id,
        status=PositionStatus(row.status),
        allocated_amount=row.allocated_amount,
        actual_amount=row.actual_amount,
        created_at=as_utc(row.created_at),  # type: ignore[arg-type]
        updated_at=as_utc(row.updated_at),  # type: ignore[arg-type]
        entry_tx_ref=row.entry_tx_ref,
        exit_tx_ref=row.exit_tx_ref,
        realized_pnl=row.realized_pnl,
        venue_position_ref=row.venue_position_ref,
        filled_quantity=row.filled_quantity,
        failure_reason=row.failure_reason,
        failure_detail=row.failure_detail,
        close_error=row.close_error,
        close_attempts=row.close_attempts,
    )
