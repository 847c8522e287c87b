"""Performance reporting over the position and trade ledgers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from copy_trading.ledger.positions import PositionLedger
from copy_trading.ledger.trades import TradeLedger
from copy_trading.types import FollowerPosition, PositionStatus, TradeIntent, TradeStatus

_PAGE_SIZE = 200


@dataclass(slots=True)
class FollowerPnL:
    follower_id: str
    operator_id: str | None
    total_positions: int
    pending_positions: int
    active_positions: int
    closed_positions: int
    failed_positions: int
    total_committed: float
    open_exposure: float
    realized_pnl: float
    win_rate_pct: float
    total_return_pct: float


@dataclass(slots=True)
class OperatorPerformance:
    operator_id: str
    closed_trades: int
    active_trades: int
    wins: int
    losses: int
    win_rate_pct: float
    total_pnl: float
    total_return_pct: float


@dataclass(slots=True)
class TradeStats:
    trade_id: str
    follower_count: int
    pending: int
    active: int
    closed: int
    failed: int
    total_allocated: float
    total_committed: float
    realized_pnl: float


def follower_pnl(
    position_ledger: PositionLedger,
    follower_id: str,
    operator_id: str | None = None,
) -> FollowerPnL:
    """Aggregate one follower's positions, optionally for a single operator."""
    positions = position_ledger.get_positions_for_follower(follower_id, operator_id=operator_id)
    counts = _status_counts(positions)
    settled = [p for p in positions if _is_settled(p)]
    wins = sum(1 for p in settled if (p.realized_pnl or 0.0) > 0)

    return FollowerPnL(
        follower_id=follower_id,
        operator_id=operator_id,
        total_positions=len(positions),
        pending_positions=counts[PositionStatus.PENDING],
        active_positions=counts[PositionStatus.ACTIVE],
        closed_positions=counts[PositionStatus.CLOSED],
        failed_positions=counts[PositionStatus.FAILED],
        total_committed=float(sum(p.actual_amount for p in positions)),
        open_exposure=float(
            sum(p.actual_amount for p in positions if p.status == PositionStatus.ACTIVE)
        ),
        realized_pnl=_realized(settled),
        win_rate_pct=_pct(wins, len(settled)),
        total_return_pct=compute_total_return_pct(settled),
    )


def operator_performance(
    trade_ledger: TradeLedger,
    position_ledger: PositionLedger,
    operator_id: str,
) -> OperatorPerformance:
    """Win/loss record of an operator, one verdict per closed trade."""
    closed_trades = list(_iter_trades(trade_ledger, operator_id, TradeStatus.CLOSED))
    active_trades = trade_ledger.get_active_trades_for_operator(operator_id)

    wins = 0
    losses = 0
    settled: list[FollowerPosition] = []
    for trade in closed_trades:
        trade_positions = [
            p for p in position_ledger.get_positions_for_trade(trade.id) if _is_settled(p)
        ]
        settled.extend(trade_positions)
        trade_pnl = _realized(trade_positions)
        if trade_pnl > 0:
            wins += 1
        elif trade_pnl < 0:
            losses += 1

    return OperatorPerformance(
        operator_id=operator_id,
        closed_trades=len(closed_trades),
        active_trades=len(active_trades),
        wins=wins,
        losses=losses,
        win_rate_pct=_pct(wins, len(closed_trades)),
        total_pnl=_realized(settled),
        total_return_pct=compute_total_return_pct(settled),
    )


def trade_stats(position_ledger: PositionLedger, trade_id: str) -> TradeStats:
    positions = position_ledger.get_positions_for_trade(trade_id)
    counts = _status_counts(positions)
    return TradeStats(
        trade_id=trade_id,
        follower_count=len(positions),
        pending=counts[PositionStatus.PENDING],
        active=counts[PositionStatus.ACTIVE],
        closed=counts[PositionStatus.CLOSED],
        failed=counts[PositionStatus.FAILED],
        total_allocated=float(sum(p.allocated_amount for p in positions)),
        total_committed=float(sum(p.actual_amount for p in positions)),
        realized_pnl=_realized(positions),
    )


def compute_total_return_pct(positions: Sequence[FollowerPosition]) -> float:
    """Realized P&L over committed capital of settled positions, in percent."""
    committed = sum(p.actual_amount for p in positions)
    if committed <= 0:
        return 0.0
    return float(_realized(positions) / committed * 100.0)


def _iter_trades(
    trade_ledger: TradeLedger,
    operator_id: str,
    status: TradeStatus,
) -> Iterable[TradeIntent]:
    page = 1
    while True:
        result = trade_ledger.list_trades(
            operator_id=operator_id, status=status, page=page, limit=_PAGE_SIZE
        )
        yield from result.trades
        if page >= result.total_pages:
            return
        page += 1


def _is_settled(position: FollowerPosition) -> bool:
    # failed rows only count when something was committed (written off)
    if position.status == PositionStatus.CLOSED:
        return True
    return position.status == PositionStatus.FAILED and position.realized_pnl is not None


def _status_counts(positions: Iterable[FollowerPosition]) -> dict[PositionStatus, int]:
    counts = {status: 0 for status in PositionStatus}
    for position in positions:
        counts[position.status] += 1
    return counts


def _realized(positions: Iterable[FollowerPosition]) -> float:
    return float(sum(p.realized_pnl or 0.0 for p in positions))


def _pct(part: int, whole: int) -> float:
    return (part / whole * 100.0) if whole else 0.0
