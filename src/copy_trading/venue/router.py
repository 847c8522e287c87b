"""Map a trade kind onto venue calls for one follower's entry and exit."""

from __future__ import annotations

from dataclasses import dataclass

from copy_trading.errors import VenueRejected
from copy_trading.ledger.schemas import (
    AddLiquidityParameters,
    ExitParameters,
    LeveragedParameters,
    RemoveLiquidityParameters,
    SwapParameters,
    parse_entry_parameters,
)
from copy_trading.types import FollowerPosition, Signer, TradeIntent, TradeKind
from copy_trading.venue.base import ExecutionVenue


@dataclass(slots=True, frozen=True)
class EntryFill:
    tx_ref: str
    committed: float
    filled_quantity: float | None = None
    position_ref: str | None = None


@dataclass(slots=True, frozen=True)
class ExitFill:
    tx_ref: str
    realized_pnl: float


def open_position(
    venue: ExecutionVenue,
    trade: TradeIntent,
    allocation: float,
    signer: Signer,
    *,
    client_ref: str,
) -> EntryFill:
    """Execute the follower's scaled copy of the operator's entry."""
    params = parse_entry_parameters(trade.kind, trade.entry_parameters)

    if isinstance(params, SwapParameters):
        ratio = allocation / params.amount_in
        receipt = venue.swap(
            params.token_in,
            params.token_out,
            allocation,
            params.min_amount_out * ratio,
            signer,
            client_ref=client_ref,
        )
        return EntryFill(receipt.tx_ref, allocation, filled_quantity=receipt.amount_out)

    if isinstance(params, AddLiquidityParameters):
        ratio = allocation / params.amount_a
        receipt = venue.add_liquidity(
            params.token_a,
            params.token_b,
            allocation,
            params.amount_b * ratio,
            signer,
            client_ref=client_ref,
        )
        return EntryFill(receipt.tx_ref, allocation, filled_quantity=receipt.amount_out)

    if isinstance(params, RemoveLiquidityParameters):
        ratio = allocation / params.liquidity
        receipt = venue.remove_liquidity(
            params.token_a,
            params.token_b,
            allocation,
            params.min_amount_a * ratio,
            params.min_amount_b * ratio,
            signer,
            client_ref=client_ref,
        )
        return EntryFill(receipt.tx_ref, allocation, filled_quantity=receipt.amount_out)

    if isinstance(params, LeveragedParameters):
        receipt = venue.open_leveraged_position(
            params.asset,
            allocation,
            trade.kind == TradeKind.LEVERAGED_LONG,
            params.leverage,
            signer,
            client_ref=client_ref,
        )
        if not receipt.position_ref:
            raise VenueRejected("venue_returned_no_position_ref")
        return EntryFill(
            receipt.tx_ref,
            allocation,
            filled_quantity=receipt.amount_out,
            position_ref=receipt.position_ref,
        )

    raise VenueRejected(f"unsupported_trade_kind: {trade.kind.value}")


def close_position(
    venue: ExecutionVenue,
    trade: TradeIntent,
    position: FollowerPosition,
    exit_params: ExitParameters,
    signer: Signer,
    *,
    client_ref: str,
) -> ExitFill:
    """Unwind one follower position and compute its realized P&L."""
    params = parse_entry_parameters(trade.kind, trade.entry_parameters)

    if isinstance(params, SwapParameters):
        quantity = _require_filled(position)
        ratio = position.actual_amount / params.amount_in
        receipt = venue.swap(
            params.token_out,
            params.token_in,
            quantity,
            exit_params.min_amount_out * ratio,
            signer,
            client_ref=client_ref,
        )
        return ExitFill(receipt.tx_ref, _returned(receipt.amount_out) - position.actual_amount)

    if isinstance(params, AddLiquidityParameters):
        quantity = _require_filled(position)
        ratio = position.actual_amount / params.amount_a
        receipt = venue.remove_liquidity(
            params.token_a,
            params.token_b,
            quantity,
            exit_params.min_amount_a * ratio,
            exit_params.min_amount_b * ratio,
            signer,
            client_ref=client_ref,
        )
        return ExitFill(receipt.tx_ref, _returned(receipt.amount_out) - position.actual_amount)

    if isinstance(params, RemoveLiquidityParameters):
        # re-deposit what was withdrawn; the withdrawal itself realized nothing
        quantity = _require_filled(position)
        receipt = venue.add_liquidity(
            params.token_a,
            params.token_b,
            quantity,
            quantity * exit_params.pair_ratio,
            signer,
            client_ref=client_ref,
        )
        return ExitFill(receipt.tx_ref, 0.0)

    if isinstance(params, LeveragedParameters):
        if not position.venue_position_ref:
            raise VenueRejected(f"position_without_venue_ref: {position.id}")
        receipt = venue.close_leveraged_position(
            position.venue_position_ref,
            signer,
            client_ref=client_ref,
        )
        return ExitFill(receipt.tx_ref, receipt.realized_pnl or 0.0)

    raise VenueRejected(f"unsupported_trade_kind: {trade.kind.value}")


def _require_filled(position: FollowerPosition) -> float:
    if position.filled_quantity is None or position.filled_quantity <= 0:
        raise VenueRejected(f"position_without_filled_quantity: {position.id}")
    return position.filled_quantity


def _returned(amount_out: float | None) -> float:
    if amount_out is None:
        raise VenueRejected("venue_returned_no_amount_out")
    return amount_out
