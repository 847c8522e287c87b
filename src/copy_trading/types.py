"""Shared domain types for the fan-out pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


class TradeKind(str, Enum):
    SPOT_SWAP = "spot-swap"
    ADD_LIQUIDITY = "add-liquidity"
    REMOVE_LIQUIDITY = "remove-liquidity"
    LEVERAGED_LONG = "leveraged-long"
    LEVERAGED_SHORT = "leveraged-short"

    @property
    def is_leveraged(self) -> bool:
        return self in (TradeKind.LEVERAGED_LONG, TradeKind.LEVERAGED_SHORT)


class TradeStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


class PositionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_open(self) -> bool:
        return self in (PositionStatus.PENDING, PositionStatus.ACTIVE)


OPEN_POSITION_STATUSES = (PositionStatus.PENDING, PositionStatus.ACTIVE)


@dataclass(slots=True, frozen=True)
class Operator:
    """A strategy operator whose signals are copied."""

    id: str
    name: str
    active: bool
    created_at: datetime


@dataclass(slots=True, frozen=True)
class TradeIntent:
    """One upstream trade signal from an operator."""

    id: str
    operator_id: str
    kind: TradeKind
    confidence: float
    entry_parameters: dict[str, Any]
    status: TradeStatus
    created_at: datetime
    closed_at: datetime | None = None
    exit_parameters: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class FollowerSubscription:
    """Standing instruction that a follower copies an operator."""

    id: str
    follower_id: str
    operator_id: str
    allocation_percentage: float
    max_position_size: float
    active: bool
    subscribed_at: datetime
    updated_at: datetime
    unsubscribed_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class FollowerPosition:
    """One follower's stake in one trade."""

    id: str
    trade_id: str
    follower_id: str
    status: PositionStatus
    allocated_amount: float
    actual_amount: float
    created_at: datetime
    updated_at: datetime
    entry_tx_ref: str | None = None
    exit_tx_ref: str | None = None
    realized_pnl: float | None = None
    venue_position_ref: str | None = None
    filled_quantity: float | None = None
    failure_reason: str | None = None
    failure_detail: str | None = None
    close_error: str | None = None
    close_attempts: int = 0


@dataclass(slots=True, frozen=True)
class Signer:
    """Decrypted signing material for exactly one user."""

    user_id: str
    private_key: str = field(repr=False)
    address: str | None = None


@dataclass(slots=True)
class TradePage:
    """One page of trade history."""

    trades: list[TradeIntent]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


FollowerAction = Literal["created", "resumed", "skipped"]


@dataclass(slots=True)
class FollowerOutcome:
    """What happened to one follower during a dispatch or close pass."""

    follower_id: str
    position_id: str
    action: FollowerAction
    status: PositionStatus
    amount: float = 0.0
    failure_reason: str | None = None
    deferred: bool = False


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatch pass over a trade."""

    trade_id: str
    trade_status: TradeStatus
    fanout_size: int = 0
    outcomes: list[FollowerOutcome] = field(default_factory=list)
    in_flight: bool = False
    elapsed_ms: float = 0.0

    def count(self, status: PositionStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def created(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == "created")

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == "skipped")

    @property
    def deferred(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.deferred)


@dataclass(slots=True)
class CloseResult:
    """Outcome of one close pass over a trade."""

    trade_id: str
    trade_status: TradeStatus
    outcomes: list[FollowerOutcome] = field(default_factory=list)
    realized_pnl: float = 0.0
    elapsed_ms: float = 0.0

    @property
    def closed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == PositionStatus.CLOSED)

    @property
    def still_open(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status.is_open)

    @property
    def complete(self) -> bool:
        return self.trade_status == TradeStatus.CLOSED
