"""Follower registry: who copies which operator, and at what size."""

from __future__ import annotations

import math
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from copy_trading.db.engine import Database
from copy_trading.db.models import SubscriptionRow, as_utc, new_id, utcnow
from copy_trading.errors import (
    DuplicateSubscription,
    HasOpenPositions,
    InvalidParameters,
    SubscriptionNotFound,
)
from copy_trading.ledger.positions import count_open_positions
from copy_trading.registry.operators import OperatorRegistry
from copy_trading.types import FollowerSubscription
from copy_trading.utils.logging import get_logger


class FollowerRegistry:
    """Durable (follower, operator, allocation rule) subscriptions.

    A second ``subscribe`` for a pair that is already active raises
    ``DuplicateSubscription``; settings changes go through ``update_settings``.
    """

    def __init__(self, database: Database, operators: OperatorRegistry) -> None:
        self._db = database
        self._operators = operators
        self._logger = get_logger("copy_trading.registry.followers")

    def subscribe(
        self,
        follower_id: str,
        operator_id: str,
        allocation_percentage: float,
        max_position_size: float,
    ) -> FollowerSubscription:
        if not follower_id:
            raise InvalidParameters("follower_id_required")
        _validate_allocation_rule(allocation_percentage, max_position_size)
        self._operators.require_active(operator_id)

        try:
            with self._db.session() as session:
                if _find_active(session, follower_id, operator_id) is not None:
                    raise DuplicateSubscription(
                        f"already_following: follower={follower_id} operator={operator_id}"
                    )
                now = utcnow()
                row = SubscriptionRow(
                    id=new_id(),
                    follower_id=follower_id,
                    operator_id=operator_id,
                    allocation_percentage=float(allocation_percentage),
                    max_position_size=float(max_position_size),
                    active=True,
                    subscribed_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                subscription = _to_subscription(row)
        except IntegrityError as exc:
            # lost a race against a concurrent subscribe for the same pair
            raise DuplicateSubscription(
                f"already_following: follower={follower_id} operator={operator_id}"
            ) from exc

        self._logger.info(
            "follower_subscribed",
            follower_id=follower_id,
            operator_id=operator_id,
            allocation_percentage=subscription.allocation_percentage,
            max_position_size=subscription.max_position_size,
        )
        return subscription

    def update_settings(
        self,
        follower_id: str,
        operator_id: str,
        *,
        allocation_percentage: float | None = None,
        max_position_size: float | None = None,
    ) -> FollowerSubscription:
        with self._db.session() as session:
            row = _find_active(session, follower_id, operator_id)
            if row is None:
                raise SubscriptionNotFound(
                    f"no_active_subscription: follower={follower_id} operator={operator_id}"
                )
            new_pct = allocation_percentage
            if new_pct is None:
                new_pct = row.allocation_percentage
            new_max = row.max_position_size if max_position_size is None else max_position_size
            _validate_allocation_rule(new_pct, new_max)
            row.allocation_percentage = float(new_pct)
            row.max_position_size = float(new_max)
            row.updated_at = utcnow()
            session.flush()
            subscription = _to_subscription(row)
        self._logger.info(
            "follower_settings_updated",
            follower_id=follower_id,
            operator_id=operator_id,
            allocation_percentage=subscription.allocation_percentage,
            max_position_size=subscription.max_position_size,
        )
        return subscription

    def unsubscribe(self, follower_id: str, operator_id: str) -> FollowerSubscription:
        """Soft-delete the active subscription unless positions are still open."""
        with self._db.session() as session:
            row = _find_active(session, follower_id, operator_id)
            if row is None:
                raise SubscriptionNotFound(
                    f"no_active_subscription: follower={follower_id} operator={operator_id}"
                )
            open_count = count_open_positions(session, follower_id, operator_id)
            if open_count:
                raise HasOpenPositions(
                    f"open_positions={open_count}: follower={follower_id} operator={operator_id}"
                )
            now = utcnow()
            row.active = False
            row.unsubscribed_at = now
            row.updated_at = now
            session.flush()
            subscription = _to_subscription(row)
        self._logger.info("follower_unsubscribed", follower_id=follower_id, operator_id=operator_id)
        return subscription

    def purge(self, subscription_id: str) -> None:
        """Hard delete; only allowed with zero open positions against the operator."""
        with self._db.session() as session:
            row = session.get(SubscriptionRow, subscription_id)
            if row is None:
                raise SubscriptionNotFound(f"unknown_subscription: {subscription_id}")
            open_count = count_open_positions(session, row.follower_id, row.operator_id)
            if open_count:
                raise HasOpenPositions(
                    f"open_positions={open_count}: subscription={subscription_id}"
                )
            session.delete(row)
        self._logger.info("subscription_purged", subscription_id=subscription_id)

    def get_active_followers(
        self, operator_id: str, as_of: datetime | None = None
    ) -> list[FollowerSubscription]:
        """Active subscriptions of an operator.

        With ``as_of`` only subscriptions that existed at that instant are
        returned, so repeated reads for the same trade give the same set.
        """
        stmt = select(SubscriptionRow).where(
            SubscriptionRow.operator_id == operator_id,
            SubscriptionRow.active.is_(True),
        )
        if as_of is not None:
            stmt = stmt.where(SubscriptionRow.subscribed_at <= as_of)
        stmt = stmt.order_by(SubscriptionRow.subscribed_at, SubscriptionRow.id)
        with self._db.session() as session:
            return [_to_subscription(row) for row in session.scalars(stmt)]

    def get_subscription(self, follower_id: str, operator_id: str) -> FollowerSubscription | None:
        with self._db.session() as session:
            row = _find_active(session, follower_id, operator_id)
            return _to_subscription(row) if row is not None else None

    def list_for_follower(
        self, follower_id: str, *, include_inactive: bool = False
    ) -> list[FollowerSubscription]:
        stmt = select(SubscriptionRow).where(SubscriptionRow.follower_id == follower_id)
        if not include_inactive:
            stmt = stmt.where(SubscriptionRow.active.is_(True))
        stmt = stmt.order_by(SubscriptionRow.subscribed_at.desc())
        with self._db.session() as session:
            return [_to_subscription(row) for row in session.scalars(stmt)]


def _validate_allocation_rule(allocation_percentage: float, max_position_size: float) -> None:
    if not math.isfinite(allocation_percentage) or not 0.0 < allocation_percentage <= 100.0:
        raise InvalidParameters(
            f"allocation_percentage_out_of_range: {allocation_percentage} (0 < x <= 100)"
        )
    if not math.isfinite(max_position_size) or max_position_size <= 0.0:
        raise InvalidParameters(f"max_position_size_must_be_positive: {max_position_size}")


def _find_active(session: Session, follower_id: str, operator_id: str) -> SubscriptionRow | None:
    stmt = select(SubscriptionRow).where(
        SubscriptionRow.follower_id == follower_id,
        SubscriptionRow.operator_id == operator_id,
        SubscriptionRow.active.is_(True),
    )
    return session.scalars(stmt).first()


def _to_subscription(row: SubscriptionRow) -> FollowerSubscription:
    return FollowerSubscription(
        id=row.id,
        follower_id=row.follower_id,
        operator_id=row.operator_id,
        allocation_percentage=row.allocation_percentage,
        max_position_size=row.max_position_size,
        active=row.active,
        subscribed_at=as_utc(row.subscribed_at),  # type: ignore[arg-type]
        updated_at=as_utc(row.updated_at),  # type: ignore[arg-type]
        unsubscribed_at=as_utc(row.unsubscribed_at),
    )
