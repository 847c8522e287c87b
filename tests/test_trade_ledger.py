import pytest

from conftest import TOKEN_A, perp_params, swap_params
from copy_trading.errors import InvalidOperator, InvalidParameters, InvalidTransition, TradeNotFound
from copy_trading.pipeline import Pipeline
from copy_trading.types import TradeKind, TradeStatus


def test_create_trade_is_pending_and_normalized(pipeline: Pipeline) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")

    trade = pipeline.trades.create_trade("op-1", "spot-swap", 72.5, swap_params(amount_in=10))

    assert trade.status == TradeStatus.PENDING
    assert trade.kind == TradeKind.SPOT_SWAP
    assert trade.entry_parameters["amount_in"] == 10.0
    assert trade.entry_parameters["min_amount_out"] == 0.0
    assert pipeline.trades.get_trade(trade.id) == trade


@pytest.mark.parametrize("confidence", [-1, 100.5, float("nan")])
def test_create_trade_rejects_confidence_out_of_range(
    pipeline: Pipeline, confidence: float
) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")
    with pytest.raises(InvalidParameters):
        pipeline.trades.create_trade("op-1", "spot-swap", confidence, swap_params())


def test_create_trade_rejects_mismatched_parameters(pipeline: Pipeline) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")

    with pytest.raises(InvalidParameters):
        pipeline.trades.create_trade("op-1", "leveraged-long", 50, swap_params())
    with pytest.raises(InvalidParameters):
        pipeline.trades.create_trade(
            "op-1", "spot-swap", 50, {**swap_params(), "token_out": "not-an-address"}
        )
    with pytest.raises(InvalidParameters):
        pipeline.trades.create_trade("op-1", "margin-call", 50, swap_params())
    with pytest.raises(InvalidParameters):
        pipeline.trades.create_trade("op-1", "leveraged-short", 50, perp_params(leverage=500))


def test_create_trade_rejects_unknown_or_inactive_operator(pipeline: Pipeline) -> None:
    with pytest.raises(InvalidOperator):
        pipeline.trades.create_trade("ghost", "spot-swap", 50, swap_params())

    pipeline.operators.register("alpha", operator_id="op-1")
    pipeline.operators.deactivate("op-1")
    with pytest.raises(InvalidOperator):
        pipeline.trades.create_trade("op-1", "spot-swap", 50, swap_params())


def test_trade_lifecycle_transitions(pipeline: Pipeline) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")
    trade = pipeline.trades.create_trade("op-1", "add-liquidity", 50, {
        "token_a": TOKEN_A,
        "token_b": "0x" + "c3" * 20,
        "amount_a": 100,
        "amount_b": 200,
    })

    with pytest.raises(InvalidTransition):
        pipeline.trades.close_trade(trade.id)

    assert pipeline.trades.mark_active(trade.id).status == TradeStatus.ACTIVE
    assert pipeline.trades.mark_active(trade.id).status == TradeStatus.ACTIVE
    assert [t.id for t in pipeline.trades.get_active_trades_for_operator("op-1")] == [trade.id]

    closed = pipeline.trades.close_trade(trade.id, {"min_amount_a": 1})
    assert closed.status == TradeStatus.CLOSED
    assert closed.closed_at is not None
    assert closed.exit_parameters == {"min_amount_a": 1}
    with pytest.raises(InvalidTransition):
        pipeline.trades.close_trade(trade.id)
    with pytest.raises(InvalidTransition):
        pipeline.trades.mark_active(trade.id)


def test_mark_failed_only_from_pending(pipeline: Pipeline) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")
    trade = pipeline.trades.create_trade("op-1", "spot-swap", 50, swap_params())

    assert pipeline.trades.mark_failed(trade.id).status == TradeStatus.FAILED
    with pytest.raises(InvalidTransition):
        pipeline.trades.mark_failed(trade.id)


def test_get_trade_unknown(pipeline: Pipeline) -> None:
    with pytest.raises(TradeNotFound):
        pipeline.trades.get_trade("nope")


def test_list_trades_paginates_newest_first(pipeline: Pipeline) -> None:
    pipeline.operators.register("alpha", operator_id="op-1")
    pipeline.operators.register("beta", operator_id="op-2")
    created = [
        pipeline.trades.create_trade("op-1", "spot-swap", 10 + i, swap_params()) for i in range(5)
    ]
    pipeline.trades.create_trade("op-2", "spot-swap", 50, swap_params())

    first = pipeline.trades.list_trades(operator_id="op-1", page=1, limit=2)
    last = pipeline.trades.list_trades(operator_id="op-1", page=3, limit=2)

    assert first.total == 5
    assert first.total_pages == 3
    assert [t.id for t in first.trades] == [created[4].id, created[3].id]
    assert [t.id for t in last.trades] == [created[0].id]
    assert pipeline.trades.list_trades(status=TradeStatus.PENDING).total == 6
    with pytest.raises(InvalidParameters):
        pipeline.trades.list_trades(page=0)
