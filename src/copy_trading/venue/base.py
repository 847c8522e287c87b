"""Execution venue capability shared by all adapters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from copy_trading.types import Signer


@dataclass(slots=True, frozen=True)
class VenueReceipt:
    """Confirmed result of one venue call.

    ``amount_out`` is what the caller received (swap output, LP units minted,
    tokens withdrawn). ``position_ref`` identifies an open leveraged position.
    """

    tx_ref: str
    position_ref: str | None = None
    amount_out: float | None = None
    realized_pnl: float | None = None


class ExecutionVenue(Protocol):
    """Uniform, individually atomic venue operations.

    Each call either returns a confirmed ``VenueReceipt`` or raises a
    ``VenueError`` subclass. ``client_ref`` is an idempotency key: a venue
    that has already seen it returns the original receipt.
    """

    def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        min_amount_out: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt: ...

    def add_liquidity(
        self,
        token_a: str,
        token_b: str,
        amount_a: float,
        amount_b: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt: ...

    def remove_liquidity(
        self,
        token_a: str,
        token_b: str,
        liquidity: float,
        min_amount_a: float,
        min_amount_b: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt: ...

    def open_leveraged_position(
        self,
        asset: str,
        size: float,
        is_long: bool,
        leverage: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt: ...

    def close_leveraged_position(
        self,
        position_ref: str,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt: ...
