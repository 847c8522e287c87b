from datetime import timedelta

import pytest

from conftest import swap_params
from copy_trading.errors import (
    DuplicateSubscription,
    HasOpenPositions,
    InvalidOperator,
    InvalidParameters,
    SubscriptionNotFound,
)
from copy_trading.pipeline import Pipeline
from copy_trading.types import PositionStatus


def _setup(pipeline: Pipeline) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")


def test_register_and_deactivate_operator(pipeline: Pipeline) -> None:
    _setup(pipeline)
    assert pipeline.operators.require_active("op-1").name == "alpha"

    pipeline.operators.deactivate("op-1")

    with pytest.raises(InvalidOperator):
        pipeline.operators.require_active("op-1")
    assert pipeline.operators.list_operators(active_only=True) == []


def test_register_rejects_duplicate_id(pipeline: Pipeline) -> None:
    _setup(pipeline)
    with pytest.raises(InvalidParameters):
        pipeline.operators.register("again", operator_id="op-1")


def test_subscribe_requires_active_operator(pipeline: Pipeline) -> None:
    with pytest.raises(InvalidOperator):
        pipeline.followers.subscribe("f-1", "missing", 10, 100)


def test_duplicate_subscription_is_rejected(pipeline: Pipeline) -> None:
    _setup(pipeline)
    pipeline.followers.subscribe("f-1", "op-1", 10, 100)

    with pytest.raises(DuplicateSubscription):
        pipeline.followers.subscribe("f-1", "op-1", 20, 200)


def test_update_settings_changes_only_given_fields(pipeline: Pipeline) -> None:
    _setup(pipeline)
    pipeline.followers.subscribe("f-1", "op-1", 10, 100)

    updated = pipeline.followers.update_settings("f-1", "op-1", max_position_size=500)

    assert updated.allocation_percentage == 10
    assert updated.max_position_size == 500
    with pytest.raises(InvalidParameters):
        pipeline.followers.update_settings("f-1", "op-1", allocation_percentage=0)


def test_unsubscribe_refused_while_positions_open(pipeline: Pipeline) -> None:
    _setup(pipeline)
    pipeline.followers.subscribe("f-1", "op-1", 10, 100)
    trade = pipeline.trades.create_trade("op-1", "spot-swap", 50, swap_params())
    pipeline.positions.upsert_pending(trade.id, "f-1", 5.0)

    with pytest.raises(HasOpenPositions):
        pipeline.followers.unsubscribe("f-1", "op-1")
    assert pipeline.followers.get_subscription("f-1", "op-1") is not None


def test_unsubscribe_then_resubscribe(pipeline: Pipeline) -> None:
    _setup(pipeline)
    pipeline.followers.subscribe("f-1", "op-1", 10, 100)
    trade = pipeline.trades.create_trade("op-1", "spot-swap", 50, swap_params())
    position, _ = pipeline.positions.upsert_pending(trade.id, "f-1", 5.0)
    pipeline.positions.update_status(position.id, PositionStatus.FAILED, failure_reason="Test")

    gone = pipeline.followers.unsubscribe("f-1", "op-1")

    assert gone.active is False
    assert gone.unsubscribed_at is not None
    assert pipeline.followers.get_active_followers("op-1") == []
    again = pipeline.followers.subscribe("f-1", "op-1", 30, 300)
    assert again.active is True
    assert len(pipeline.followers.list_for_follower("f-1", include_inactive=True)) == 2


def test_unsubscribe_unknown_pair(pipeline: Pipeline) -> None:
    _setup(pipeline)
    with pytest.raises(SubscriptionNotFound):
        pipeline.followers.unsubscribe("ghost", "op-1")


def test_purge_removes_subscription(pipeline: Pipeline) -> None:
    _setup(pipeline)
    sub = pipeline.followers.subscribe("f-1", "op-1", 10, 100)

    pipeline.followers.purge(sub.id)

    assert pipeline.followers.list_for_follower("f-1", include_inactive=True) == []
    with pytest.raises(SubscriptionNotFound):
        pipeline.followers.purge(sub.id)


def test_active_followers_as_of_excludes_later_subscriptions(pipeline: Pipeline) -> None:
    _setup(pipeline)
    early = pipeline.followers.subscribe("f-1", "op-1", 10, 100)
    late = pipeline.followers.subscribe("f-2", "op-1", 10, 100)

    cutoff = early.subscribed_at + (late.subscribed_at - early.subscribed_at) / 2
    snapshot = pipeline.followers.get_active_followers("op-1", as_of=cutoff)

    assert [s.follower_id for s in snapshot] == ["f-1"]
    everyone = pipeline.followers.get_active_followers(
        "op-1", as_of=late.subscribed_at + timedelta(seconds=1)
    )
    assert [s.follower_id for s in everyone] == ["f-1", "f-2"]
