import hashlib
import hmac
import json

import httpx
import pytest

from conftest import TOKEN_A, TOKEN_B
from copy_trading.config import Settings
from copy_trading.errors import InsufficientLiquidity, VenueRejected, VenueTimeout, VenueUnavailable
from copy_trading.types import Signer
from copy_trading.venue.http import HttpVenue

_SIGNER = Signer(user_id="f-1", private_key="0x" + "11" * 32, address="0x" + "22" * 20)


def _settings(tmp_path: object) -> Settings:
    return Settings(
        journal_dir=tmp_path,
        venue_url="https://gateway.test",
        venue_api_key="k-123",
        venue_confirm_attempts=3,
        venue_confirm_interval_seconds=0.0,
        venue_submit_attempts=3,
        venue_submit_backoff_seconds=0.0,
    )


def test_swap_confirmed_on_submit_and_signed(tmp_path: object) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "order_id": "o-1",
                "status": "confirmed",
                "tx_ref": "0xfeed",
                "amount_out": "42.5",
            },
        )

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    receipt = venue.swap(TOKEN_A, TOKEN_B, 50.0, 40.0, _SIGNER, client_ref="pos-1:entry")

    assert receipt.tx_ref == "0xfeed"
    assert receipt.amount_out == 42.5
    request = seen[0]
    assert request.url.path == "/v1/orders"
    assert request.headers["Authorization"] == "Bearer k-123"
    body = json.loads(request.content)
    assert body["client_ref"] == "pos-1:entry"
    assert body["account"] == _SIGNER.address
    assert body["params"]["amount_in"] == 50.0
    expected = hmac.new(
        _SIGNER.private_key.encode("utf-8"), request.content, hashlib.sha256
    ).hexdigest()
    assert request.headers["X-Order-Signature"] == expected


def test_pending_order_is_polled_until_confirmed(tmp_path: object) -> None:
    polls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(202, json={"order_id": "o-9", "status": "pending"})
        polls["count"] += 1
        if polls["count"] < 2:
            return httpx.Response(200, json={"order_id": "o-9", "status": "pending"})
        return httpx.Response(
            200,
            json={
                "order_id": "o-9",
                "status": "confirmed",
                "tx_ref": "0xbeef",
                "position_ref": "p-7",
            },
        )

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    receipt = venue.open_leveraged_position("ETH", 10.0, True, 3.0, _SIGNER, client_ref="c")

    assert receipt.position_ref == "p-7"
    assert polls["count"] == 2


def test_never_confirmed_is_timeout(tmp_path: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"order_id": "o-1", "status": "pending"})

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    with pytest.raises(VenueTimeout):
        venue.close_leveraged_position("p-1", _SIGNER, client_ref="c")


def test_insufficient_liquidity_error_code(tmp_path: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            422,
            json={"error": {"code": "insufficient_liquidity", "message": "pool too shallow"}},
        )

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    with pytest.raises(InsufficientLiquidity, match="pool too shallow"):
        venue.add_liquidity(TOKEN_A, TOKEN_B, 1.0, 1.0, _SIGNER, client_ref="c")


def test_rejected_order_is_venue_rejected(tmp_path: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "order_id": "o-1",
                "status": "rejected",
                "error": {"code": "slippage", "message": "min out not met"},
            },
        )

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    with pytest.raises(VenueRejected):
        venue.remove_liquidity(TOKEN_A, TOKEN_B, 1.0, 0.0, 0.0, _SIGNER, client_ref="c")


def test_server_error_and_transport_error_are_unavailable(tmp_path: object) -> None:
    venue = HttpVenue(
        _settings(tmp_path), transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )
    with pytest.raises(VenueUnavailable):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(refuse))
    with pytest.raises(VenueUnavailable):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")


def test_read_timeout_is_venue_timeout(tmp_path: object) -> None:
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(slow))
    with pytest.raises(VenueTimeout):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")


def test_confirmed_order_without_tx_ref_is_rejected(tmp_path: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"order_id": "o-1", "status": "confirmed"})

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    with pytest.raises(VenueRejected):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")


def test_missing_url_is_unavailable(tmp_path: object) -> None:
    venue = HttpVenue(Settings(journal_dir=tmp_path, venue_url=""))
    with pytest.raises(VenueUnavailable):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")


def test_submit_timeout_after_acceptance_is_resubmitted(tmp_path: object) -> None:
    accepted: dict[str, dict[str, object]] = {}
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        ref = body["client_ref"]
        posts.append(ref)
        if ref not in accepted:
            accepted[ref] = {
                "order_id": "o-5",
                "status": "confirmed",
                "tx_ref": "0xcafe",
                "amount_out": "9.5",
            }
            raise httpx.ReadTimeout("gateway slow to answer", request=request)
        return httpx.Response(200, json=accepted[ref])

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    receipt = venue.swap(TOKEN_A, TOKEN_B, 10.0, 0.0, _SIGNER, client_ref="pos-5:entry")

    assert receipt.tx_ref == "0xcafe"
    assert receipt.amount_out == 9.5
    assert posts == ["pos-5:entry", "pos-5:entry"]
    assert list(accepted) == ["pos-5:entry"]


def test_unavailable_gateway_is_resubmitted_until_attempts_run_out(tmp_path: object) -> None:
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request.method)
        return httpx.Response(503)

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    with pytest.raises(VenueUnavailable):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")
    assert posts == ["POST", "POST", "POST"]


def test_rejection_is_never_resubmitted(tmp_path: object) -> None:
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request.method)
        return httpx.Response(
            422,
            json={"error": {"code": "insufficient_liquidity", "message": "pool too shallow"}},
        )

    venue = HttpVenue(_settings(tmp_path), transport=httpx.MockTransport(handler))
    with pytest.raises(InsufficientLiquidity):
        venue.swap(TOKEN_A, TOKEN_B, 1.0, 0.0, _SIGNER, client_ref="c")
    assert posts == ["POST"]
