"""Paper venue: simulated fills with slippage and in-memory state."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass

from copy_trading.errors import InsufficientLiquidity, VenueRejected
from copy_trading.types import Signer
from copy_trading.venue.base import VenueReceipt


@dataclass(slots=True)
class _PaperPerp:
    owner: str
    asset: str
    size: float
    is_long: bool
    leverage: float
    entry_price: float
    open: bool = True


class PaperVenue:
    """Simulated execution for paper mode and tests.

    Prices default to 1.0 per unit. ``liquidity_cap`` bounds any single fill;
    larger orders raise ``InsufficientLiquidity``.
    """

    def __init__(
        self,
        *,
        slippage_bps: float = 2.0,
        liquidity_cap: float | None = None,
    ) -> None:
        self._slippage_bps = slippage_bps
        self._liquidity_cap = liquidity_cap
        self._lock = threading.Lock()
        self._rates: dict[tuple[str, str], float] = {}
        self._marks: dict[str, float] = {}
        self._perps: dict[str, _PaperPerp] = {}
        self._receipts: dict[str, VenueReceipt] = {}

    # ------------------------------------------------------------------ market
    def set_rate(self, token_in: str, token_out: str, rate: float) -> None:
        """Units of token_out received per unit of token_in."""
        with self._lock:
            self._rates[(token_in.lower(), token_out.lower())] = rate

    def set_mark(self, asset: str, price: float) -> None:
        with self._lock:
            self._marks[asset] = price

    @property
    def receipt_count(self) -> int:
        with self._lock:
            return len(self._receipts)

    # ------------------------------------------------------------ operations
    def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        min_amount_out: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt:
        with self._lock:
            seen = self._receipts.get(client_ref)
            if seen is not None:
                return seen
            self._check_size(amount_in)
            rate = self._rates.get((token_in.lower(), token_out.lower()), 1.0)
            amount_out = amount_in * rate * self._slip_factor()
            if amount_out < min_amount_out:
                raise VenueRejected(
                    f"slippage_exceeded: out={amount_out:.8f} min={min_amount_out:.8f}"
                )
            return self._record(client_ref, VenueReceipt(tx_ref=_tx_ref(), amount_out=amount_out))

    def add_liquidity(
        self,
        token_a: str,
        token_b: str,
        amount_a: float,
        amount_b: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt:
        with self._lock:
            seen = self._receipts.get(client_ref)
            if seen is not None:
                return seen
            self._check_size(amount_a)
            if amount_b <= 0:
                raise VenueRejected("amount_b_must_be_positive")
            # LP units are denominated in token_a
            minted = amount_a * self._slip_factor()
            return self._record(client_ref, VenueReceipt(tx_ref=_tx_ref(), amount_out=minted))

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
    ) -> VenueReceipt:
        with self._lock:
            seen = self._receipts.get(client_ref)
            if seen is not None:
                return seen
            self._check_size(liquidity)
            amount_a = liquidity * self._slip_factor()
            if amount_a < min_amount_a:
                raise VenueRejected(
                    f"slippage_exceeded: out={amount_a:.8f} min={min_amount_a:.8f}"
                )
            return self._record(client_ref, VenueReceipt(tx_ref=_tx_ref(), amount_out=amount_a))

    def open_leveraged_position(
        self,
        asset: str,
        size: float,
        is_long: bool,
        leverage: float,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt:
        with self._lock:
            seen = self._receipts.get(client_ref)
            if seen is not None:
                return seen
            self._check_size(size)
            mark = self._marks.get(asset, 1.0)
            slip = self._slippage_bps / 10_000.0
            entry_price = mark * (1.0 + slip) if is_long else mark * (1.0 - slip)
            position_ref = uuid.uuid4().hex
            self._perps[position_ref] = _PaperPerp(
                owner=signer.user_id,
                asset=asset,
                size=float(size),
                is_long=is_long,
                leverage=float(leverage),
                entry_price=entry_price,
            )
            receipt = VenueReceipt(tx_ref=_tx_ref(), position_ref=position_ref, amount_out=size)
            return self._record(client_ref, receipt)

    def close_leveraged_position(
        self,
        position_ref: str,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt:
        with self._lock:
            seen = self._receipts.get(client_ref)
            if seen is not None:
                return seen
            perp = self._perps.get(position_ref)
            if perp is None or not perp.open:
                raise VenueRejected(f"no_open_position: {position_ref}")
            if perp.owner != signer.user_id:
                raise VenueRejected("position_owner_mismatch")
            mark = self._marks.get(perp.asset, 1.0)
            direction = 1.0 if perp.is_long else -1.0
            pnl = perp.size * perp.leverage * direction * (mark / perp.entry_price - 1.0)
            perp.open = False
            return self._record(client_ref, VenueReceipt(tx_ref=_tx_ref(), realized_pnl=pnl))

    # --------------------------------------------------------------- helpers
    def _check_size(self, amount: float) -> None:
        if amount <= 0:
            raise VenueRejected("amount_must_be_positive")
        if self._liquidity_cap is not None and amount > self._liquidity_cap:
            raise InsufficientLiquidity(
                f"order_exceeds_depth: amount={amount} cap={self._liquidity_cap}"
            )

    def _slip_factor(self) -> float:
        return 1.0 - self._slippage_bps / 10_000.0

    def _record(self, client_ref: str, receipt: VenueReceipt) -> VenueReceipt:
        self._receipts[client_ref] = receipt
        return receipt


def _tx_ref() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex
