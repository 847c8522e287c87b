"""HTTP execution gateway venue."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

import httpx
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from copy_trading.config import Settings
from copy_trading.errors import (
    InsufficientLiquidity,
    VenueError,
    VenueRejected,
    VenueTimeout,
    VenueUnavailable,
)
from copy_trading.types import Signer
from copy_trading.utils.logging import get_logger, log_venue_call
from copy_trading.venue.base import VenueReceipt

_ORDERS_PATH = "/v1/orders"


class _ReceiptPending(Exception):
    """Order submitted but not yet confirmed on-chain."""


class HttpVenue:
    """Client for an execution gateway that fronts the on-chain venues.

    Orders carry ``client_ref`` so the gateway can deduplicate resubmissions,
    and every call polls until the order is final before returning.
    """

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("copy_trading.venue.http")

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
        return self._execute(
            "swap",
            {
                "token_in": token_in,
                "token_out": token_out,
                "amount_in": amount_in,
                "min_amount_out": min_amount_out,
            },
            signer,
            client_ref,
        )

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
        return self._execute(
            "add_liquidity",
            {"token_a": token_a, "token_b": token_b, "amount_a": amount_a, "amount_b": amount_b},
            signer,
            client_ref,
        )

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
        return self._execute(
            "remove_liquidity",
            {
                "token_a": token_a,
                "token_b": token_b,
                "liquidity": liquidity,
                "min_amount_a": min_amount_a,
                "min_amount_b": min_amount_b,
            },
            signer,
            client_ref,
        )

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
        return self._execute(
            "open_position",
            {"asset": asset, "size": size, "is_long": is_long, "leverage": leverage},
            signer,
            client_ref,
        )

    def close_leveraged_position(
        self,
        position_ref: str,
        signer: Signer,
        *,
        client_ref: str,
    ) -> VenueReceipt:
        return self._execute("close_position", {"position_ref": position_ref}, signer, client_ref)

    # ------------------------------------------------------------------ core
    def _execute(
        self,
        operation: str,
        params: dict[str, Any],
        signer: Signer,
        client_ref: str,
    ) -> VenueReceipt:
        started = time.perf_counter()
        try:
            with self._client() as client:
                order = self._submit_until_acknowledged(
                    client, operation, params, signer, client_ref
                )
                if order.get("status") != "confirmed":
                    order = self._await_confirmation(client, str(order["order_id"]))
            receipt = _receipt_from_order(order)
        except VenueError as exc:
            log_venue_call(
                self._logger,
                operation=operation,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                client_ref=client_ref,
                error_kind=exc.kind,
            )
            raise

        log_venue_call(
            self._logger,
            operation=operation,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
            client_ref=client_ref,
            tx_ref=receipt.tx_ref,
        )
        return receipt

    def _client(self) -> httpx.Client:
        if not self._settings.venue_url:
            raise VenueUnavailable("missing_venue_url")
        return httpx.Client(
            base_url=self._settings.venue_url,
            timeout=self._settings.venue_timeout_seconds,
            headers={
                "Authorization": f"Bearer {self._settings.venue_api_key}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )

    def _submit_until_acknowledged(
        self,
        client: httpx.Client,
        operation: str,
        params: dict[str, Any],
        signer: Signer,
        client_ref: str,
    ) -> dict[str, Any]:
        """Resubmit until the gateway answers; it de-duplicates on ``client_ref``.

        A timed-out submit may still have been accepted, so the same order is
        sent again and the gateway returns the original one. Rejections are
        final and never resubmitted.
        """
        retryer = Retrying(
            retry=retry_if_exception_type((VenueTimeout, VenueUnavailable)),
            wait=wait_exponential(multiplier=self._settings.venue_submit_backoff_seconds, max=8),
            stop=stop_after_attempt(self._settings.venue_submit_attempts),
            before_sleep=lambda state: self._logger.warning(
                "venue_submit_retry",
                client_ref=client_ref,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            ),
            reraise=True,
        )
        return retryer(self._submit, client, operation, params, signer, client_ref)

    def _submit(
        self,
        client: httpx.Client,
        operation: str,
        params: dict[str, Any],
        signer: Signer,
        client_ref: str,
    ) -> dict[str, Any]:
        body = {
            "operation": operation,
            "client_ref": client_ref,
            "account": signer.address or signer.user_id,
            "params": params,
        }
        encoded = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        signature = hmac.new(
            signer.private_key.encode("utf-8"), encoded, hashlib.sha256
        ).hexdigest()
        response = self._send(
            client,
            "POST",
            _ORDERS_PATH,
            content=encoded,
            headers={"X-Order-Signature": signature},
        )
        return _check_order(response)

    def _await_confirmation(self, client: httpx.Client, order_id: str) -> dict[str, Any]:
        retryer = Retrying(
            retry=retry_if_exception_type(_ReceiptPending),
            wait=wait_fixed(self._settings.venue_confirm_interval_seconds),
            stop=stop_after_attempt(self._settings.venue_confirm_attempts),
            reraise=True,
        )
        try:
            return retryer(self._poll_order, client, order_id)
        except _ReceiptPending as exc:
            raise VenueTimeout(f"order_not_confirmed: {order_id}") from exc

    def _poll_order(self, client: httpx.Client, order_id: str) -> dict[str, Any]:
        response = self._send(client, "GET", f"{_ORDERS_PATH}/{order_id}")
        order = _check_order(response)
        if order.get("status") != "confirmed":
            raise _ReceiptPending(order_id)
        return order

    def _send(self, client: httpx.Client, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise VenueTimeout(str(exc) or "venue_timeout") from exc
        except httpx.TransportError as exc:
            raise VenueUnavailable(str(exc) or "venue_unreachable") from exc
        if response.status_code >= 500:
            raise VenueUnavailable(f"venue_http_{response.status_code}")
        if response.status_code >= 400:
            fallback = f"venue_http_{response.status_code}"
            raise _error_from_payload(_json_or_empty(response), fallback)
        return response


def _check_order(response: httpx.Response) -> dict[str, Any]:
    order = _json_or_empty(response)
    status = order.get("status")
    if status == "rejected":
        raise _error_from_payload(order, "order_rejected")
    if status not in ("pending", "confirmed") or "order_id" not in order:
        raise VenueRejected(f"malformed_venue_response: status={status!r}")
    return order


def _error_from_payload(payload: dict[str, Any], fallback: str) -> VenueError:
    error = payload.get("error")
    code = ""
    message = fallback
    if isinstance(error, dict):
        code = str(error.get("code", ""))
        message = str(error.get("message", fallback))
    if code == "insufficient_liquidity":
        return InsufficientLiquidity(message)
    if code == "timeout":
        return VenueTimeout(message)
    return VenueRejected(f"{code}: {message}" if code else message)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _receipt_from_order(order: dict[str, Any]) -> VenueReceipt:
    tx_ref = order.get("tx_ref")
    if not isinstance(tx_ref, str) or not tx_ref:
        raise VenueRejected("confirmed_order_without_tx_ref")
    return VenueReceipt(
        tx_ref=tx_ref,
        position_ref=_optional_str(order.get("position_ref")),
        amount_out=_optional_float(order.get("amount_out")),
        realized_pnl=_optional_float(order.get("realized_pnl")),
    )


def _optional_str(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
