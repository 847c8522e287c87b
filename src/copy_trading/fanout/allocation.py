"""Per-follower position sizing."""

from __future__ import annotations

from copy_trading.types import FollowerSubscription, TradeIntent


def compute_allocation(
    confidence: float,
    allocation_percentage: float,
    max_position_size: float,
) -> float:
    """Size one follower's copy of a trade.

    Confidence (0-100) scales the follower's per-trade budget linearly and the
    result never exceeds ``max_position_size``. Returns 0.0 when there is
    nothing to commit.
    """
    if confidence <= 0 or allocation_percentage <= 0 or max_position_size <= 0:
        return 0.0
    confidence_factor = min(confidence, 100.0) / 100.0
    base_allocation = max_position_size * (allocation_percentage / 100.0)
    target = min(base_allocation * confidence_factor, max_position_size)
    return max(0.0, float(target))


def allocation_for(trade: TradeIntent, subscription: FollowerSubscription) -> float:
    return compute_allocation(
        trade.confidence,
        subscription.allocation_percentage,
        subscription.max_position_size,
    )
