import time

import pytest

from conftest import swap_params
from copy_trading.errors import (
    InvalidParameters,
    InvalidTransition,
    PositionNotFound,
    TradeNotFound,
)
from copy_trading.ledger.positions import is_allowed_transition
from copy_trading.pipeline import Pipeline
from copy_trading.types import PositionStatus


def _trade_id(pipeline: Pipeline) -> str:
    pipeline.operators.register("alpha", operator_id="op-1")
    return pipeline.trades.create_trade("op-1", "spot-swap", 50, swap_params()).id


def test_upsert_pending_is_idempotent(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)

    first, created = pipeline.positions.upsert_pending(trade_id, "f-1", 25.0)
    again, created_again = pipeline.positions.upsert_pending(trade_id, "f-1", 99.0)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.allocated_amount == 25.0
    assert len(pipeline.positions.get_positions_for_trade(trade_id)) == 1


def test_upsert_pending_unknown_trade(pipeline: Pipeline) -> None:
    with pytest.raises(TradeNotFound):
        pipeline.positions.upsert_pending("missing", "f-1")


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (PositionStatus.PENDING, PositionStatus.ACTIVE, True),
        (PositionStatus.PENDING, PositionStatus.FAILED, True),
        (PositionStatus.PENDING, PositionStatus.CLOSED, False),
        (PositionStatus.ACTIVE, PositionStatus.CLOSED, True),
        (PositionStatus.ACTIVE, PositionStatus.FAILED, True),
        (PositionStatus.ACTIVE, PositionStatus.ACTIVE, True),
        (PositionStatus.ACTIVE, PositionStatus.PENDING, False),
        (PositionStatus.CLOSED, PositionStatus.ACTIVE, False),
        (PositionStatus.FAILED, PositionStatus.PENDING, False),
        (PositionStatus.FAILED, PositionStatus.ACTIVE, False),
    ],
)
def test_transition_table(current: PositionStatus, target: PositionStatus, allowed: bool) -> None:
    assert is_allowed_transition(current, target) is allowed


def test_update_status_enforces_state_machine(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)

    with pytest.raises(InvalidTransition):
        pipeline.positions.update_status(position.id, PositionStatus.CLOSED)

    active = pipeline.positions.update_status(
        position.id, PositionStatus.ACTIVE, actual_amount=10.0, entry_tx_ref="0xabc"
    )
    assert active.actual_amount == 10.0
    assert active.entry_tx_ref == "0xabc"

    closed = pipeline.positions.update_status(position.id, "closed", realized_pnl=1.5)
    assert closed.status == PositionStatus.CLOSED
    with pytest.raises(InvalidTransition):
        pipeline.positions.update_status(position.id, PositionStatus.ACTIVE)
    assert pipeline.positions.get_position(position.id).status == PositionStatus.CLOSED


def test_update_status_rejects_unknown_fields(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)

    with pytest.raises(InvalidParameters):
        pipeline.positions.update_status(position.id, PositionStatus.FAILED, follower_id="evil")
    with pytest.raises(PositionNotFound):
        pipeline.positions.update_status("missing", PositionStatus.FAILED)


def test_claim_is_exclusive_until_released(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)
    pending = PositionStatus.PENDING

    assert pipeline.positions.claim(position.id, "a", expected_status=pending, ttl_seconds=60)
    assert pipeline.positions.claim(position.id, "a", expected_status=pending, ttl_seconds=60)
    assert not pipeline.positions.claim(position.id, "b", expected_status=pending, ttl_seconds=60)

    pipeline.positions.release(position.id, "a")

    assert pipeline.positions.claim(position.id, "b", expected_status=pending, ttl_seconds=60)
    assert not pipeline.positions.claim(
        position.id, "c", expected_status=PositionStatus.ACTIVE, ttl_seconds=60
    )


def test_stale_claim_can_be_taken_over(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)
    pending = PositionStatus.PENDING

    assert pipeline.positions.claim(position.id, "a", expected_status=pending, ttl_seconds=0.05)
    time.sleep(0.1)

    assert pipeline.positions.claim(position.id, "b", expected_status=pending, ttl_seconds=0.05)


def test_update_status_releases_claim(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)
    pipeline.positions.claim(
        position.id, "a", expected_status=PositionStatus.PENDING, ttl_seconds=60
    )

    pipeline.positions.update_status(position.id, PositionStatus.ACTIVE, actual_amount=10.0)

    assert pipeline.positions.claim(
        position.id, "b", expected_status=PositionStatus.ACTIVE, ttl_seconds=60
    )


def test_update_status_guards_expected_status(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)
    pipeline.positions.update_status(position.id, PositionStatus.ACTIVE, actual_amount=10.0)

    with pytest.raises(InvalidTransition):
        pipeline.positions.update_status(
            position.id,
            PositionStatus.FAILED,
            expected_status=PositionStatus.PENDING,
            actual_amount=0.0,
        )

    assert pipeline.positions.get_position(position.id).status == PositionStatus.ACTIVE


def test_update_status_requires_current_lease_holder(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    position, _ = pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)
    pending = PositionStatus.PENDING
    pipeline.positions.claim(position.id, "a", expected_status=pending, ttl_seconds=0.05)
    time.sleep(0.1)
    assert pipeline.positions.claim(position.id, "b", expected_status=pending, ttl_seconds=60)

    with pytest.raises(InvalidTransition):
        pipeline.positions.update_status(
            position.id, PositionStatus.FAILED, expected_status=pending, claimed_by="a"
        )
    updated = pipeline.positions.update_status(
        position.id,
        PositionStatus.ACTIVE,
        expected_status=pending,
        claimed_by="b",
        actual_amount=10.0,
    )

    assert updated.status == PositionStatus.ACTIVE

def test_queries_by_follower_and_operator(pipeline: Pipeline) -> None:
    trade_id = _trade_id(pipeline)
    pipeline.operators.register("beta", operator_id="op-2")
    other = pipeline.trades.create_trade("op-2", "spot-swap", 50, swap_params()).id
    pipeline.positions.upsert_pending(trade_id, "f-1", 10.0)
    second, _ = pipeline.positions.upsert_pending(other, "f-1", 10.0)
    pipeline.positions.update_status(second.id, PositionStatus.FAILED, failure_reason="Test")

    assert len(pipeline.positions.get_positions_for_follower("f-1")) == 2
    assert len(pipeline.positions.get_positions_for_follower("f-1", operator_id="op-2")) == 1
    assert len(pipeline.positions.get_positions_for_follower("f-1", PositionStatus.FAILED)) == 1
    assert pipeline.positions.count_open_for_pair("f-1", "op-1") == 1
    assert pipeline.positions.count_open_for_pair("f-1", "op-2") == 0
    assert pipeline.positions.find(trade_id, "f-2") is None
