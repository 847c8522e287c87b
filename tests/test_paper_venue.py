import pytest

from conftest import TOKEN_A, TOKEN_B
from copy_trading.errors import InsufficientLiquidity, VenueRejected
from copy_trading.types import Signer
from copy_trading.venue.paper import PaperVenue

_ALICE = Signer(user_id="alice", private_key="0x01")
_BOB = Signer(user_id="bob", private_key="0x02")


def test_swap_applies_rate_and_slippage() -> None:
    venue = PaperVenue(slippage_bps=10)
    venue.set_rate(TOKEN_A, TOKEN_B, 2.0)

    receipt = venue.swap(TOKEN_A, TOKEN_B, 100.0, 0.0, _ALICE, client_ref="r-1")

    assert receipt.amount_out == pytest.approx(100.0 * 2.0 * 0.999)
    assert receipt.tx_ref.startswith("0x")


def test_swap_rejects_on_min_amount_out() -> None:
    venue = PaperVenue(slippage_bps=50)
    with pytest.raises(VenueRejected):
        venue.swap(TOKEN_A, TOKEN_B, 100.0, 100.0, _ALICE, client_ref="r-1")


def test_repeated_client_ref_returns_original_receipt() -> None:
    venue = PaperVenue()

    first = venue.swap(TOKEN_A, TOKEN_B, 10.0, 0.0, _ALICE, client_ref="r-1")
    again = venue.swap(TOKEN_A, TOKEN_B, 10.0, 0.0, _ALICE, client_ref="r-1")

    assert again == first
    assert venue.receipt_count == 1


def test_liquidity_cap_raises_insufficient_liquidity() -> None:
    venue = PaperVenue(liquidity_cap=50.0)
    with pytest.raises(InsufficientLiquidity):
        venue.add_liquidity(TOKEN_A, TOKEN_B, 60.0, 60.0, _ALICE, client_ref="r-1")


def test_leveraged_round_trip_pnl() -> None:
    venue = PaperVenue(slippage_bps=0.0)
    venue.set_mark("ETH", 2000.0)
    opened = venue.open_leveraged_position("ETH", 100.0, True, 5.0, _ALICE, client_ref="o-1")
    venue.set_mark("ETH", 2200.0)

    closed = venue.close_leveraged_position(opened.position_ref or "", _ALICE, client_ref="c-1")

    assert closed.realized_pnl == pytest.approx(100.0 * 5.0 * 0.1)
    with pytest.raises(VenueRejected):
        venue.close_leveraged_position(opened.position_ref or "", _ALICE, client_ref="c-2")


def test_short_loses_when_price_rises() -> None:
    venue = PaperVenue(slippage_bps=0.0)
    opened = venue.open_leveraged_position("BTC", 10.0, False, 2.0, _ALICE, client_ref="o-1")
    venue.set_mark("BTC", 1.5)

    closed = venue.close_leveraged_position(opened.position_ref or "", _ALICE, client_ref="c-1")

    assert closed.realized_pnl == pytest.approx(-10.0)


def test_only_owner_can_close_position() -> None:
    venue = PaperVenue()
    opened = venue.open_leveraged_position("ETH", 10.0, True, 2.0, _ALICE, client_ref="o-1")

    with pytest.raises(VenueRejected):
        venue.close_leveraged_position(opened.position_ref or "", _BOB, client_ref="c-1")
