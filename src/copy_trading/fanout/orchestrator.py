"""Fan-out orchestrator: one operator trade into N independent follower positions."""

from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable

from copy_trading.custody.custodian import WalletCustodian
from copy_trading.errors import (
    CopyTradeError,
    HasOpenPositions,
    InfrastructureError,
    InvalidTransition,
    KeyNotFound,
    TradeNotPending,
    VenueError,
    ZeroAllocation,
)
from copy_trading.fanout.allocation import allocation_for
from copy_trading.journal.store import JournalStore
from copy_trading.ledger.positions import PositionLedger
from copy_trading.ledger.schemas import ExitParameters, parse_exit_parameters
from copy_trading.ledger.trades import TradeLedger
from copy_trading.registry.followers import FollowerRegistry
from copy_trading.types import (
    OPEN_POSITION_STATUSES,
    CloseResult,
    DispatchResult,
    FollowerAction,
    FollowerOutcome,
    FollowerPosition,
    PositionStatus,
    TradeIntent,
    TradeStatus,
)
from copy_trading.utils.logging import get_logger, log_dispatch_summary
from copy_trading.venue.base import ExecutionVenue
from copy_trading.venue.router import close_position, open_position


@dataclass(slots=True)
class _WorkItem:
    position: FollowerPosition
    action: FollowerAction
    owner: str


class FanOutOrchestrator:
    """Stateless coordinator over the trade, follower and position ledgers.

    Every pass is safe to re-run: the (trade, follower) uniqueness of
    positions decides who still needs work, and only pending rows are ever
    sent to the venue on dispatch (only active rows on close).
    """

    def __init__(
        self,
        trades: TradeLedger,
        followers: FollowerRegistry,
        positions: PositionLedger,
        custodian: WalletCustodian,
        venue: ExecutionVenue,
        *,
        journal: JournalStore | None = None,
        max_workers: int = 16,
        claim_ttl_seconds: float = 300.0,
    ) -> None:
        self._trades = trades
        self._followers = followers
        self._positions = positions
        self._custodian = custodian
        self._venue = venue
        self._journal = journal
        self._max_workers = max(1, max_workers)
        self._claim_ttl_seconds = claim_ttl_seconds
        self._logger = get_logger("copy_trading.fanout")

    # ================================================================ dispatch
    def dispatch_trade(self, trade_id: str) -> DispatchResult:
        """Fan a pending trade out to every follower in its snapshot.

        Raises only when the trade cannot be loaded, is not pending, or the
        follower registry cannot be read. Per-follower problems end up on the
        position rows. The trade becomes active once no position is left
        pending; otherwise ``in_flight`` is set and the call can be repeated.
        """
        started = perf_counter()
        # claim owner for this pass; concurrent passes never share one
        pass_id = uuid.uuid4().hex
        trade = self._trades.get_trade(trade_id)
        if trade.status != TradeStatus.PENDING:
            raise TradeNotPending(f"trade {trade_id} is {trade.status.value}")
        snapshot = self._followers.get_active_followers(trade.operator_id, as_of=trade.created_at)

        result = DispatchResult(trade_id=trade.id, trade_status=trade.status)
        self._journal_event(
            "dispatch_start",
            {"trade_id": trade.id, "operator_id": trade.operator_id, "followers": len(snapshot)},
        )

        work: list[_WorkItem] = []
        seen_followers: set[str] = set()
        for subscription in snapshot:
            seen_followers.add(subscription.follower_id)
            allocation = allocation_for(trade, subscription)
            try:
                position, created = self._positions.upsert_pending(
                    trade.id, subscription.follower_id, allocation
                )
            except InfrastructureError as exc:
                self._logger.warning(
                    "position_create_deferred",
                    trade_id=trade.id,
                    follower_id=subscription.follower_id,
                    error=str(exc),
                )
                result.outcomes.append(
                    FollowerOutcome(
                        follower_id=subscription.follower_id,
                        position_id="",
                        action="created",
                        status=PositionStatus.PENDING,
                        failure_reason=exc.kind,
                        deferred=True,
                    )
                )
                continue

            if created:
                self._journal_event(
                    "position_created",
                    {
                        "trade_id": trade.id,
                        "position_id": position.id,
                        "follower_id": position.follower_id,
                        "allocated_amount": position.allocated_amount,
                    },
                )
                work.append(_WorkItem(position, "created", pass_id))
            elif position.status == PositionStatus.PENDING:
                work.append(_WorkItem(position, "resumed", pass_id))
            else:
                result.outcomes.append(_settled_outcome(position))

        work.extend(self._orphaned_pending(trade, seen_followers, result, pass_id))
        result.fanout_size = len(seen_followers) + sum(
            1 for item in work if item.position.follower_id not in seen_followers
        )

        result.outcomes.extend(
            self._run_concurrently(
                [lambda item=item: self._execute_entry(trade, item) for item in work],
                work,
                phase="dispatch",
            )
        )

        result.in_flight = any(outcome.deferred for outcome in result.outcomes)
        if not result.in_flight:
            try:
                result.trade_status = self._trades.mark_active(trade.id).status
            except InfrastructureError as exc:
                self._logger.warning("trade_activation_deferred", trade_id=trade.id, error=str(exc))
                result.in_flight = True

        result.elapsed_ms = (perf_counter() - started) * 1000
        summary = {
            "trade_id": trade.id,
            "trade_status": result.trade_status.value,
            "fanout_size": result.fanout_size,
            "created": result.created,
            "skipped": result.skipped,
            "active": result.count(PositionStatus.ACTIVE),
            "failed": result.count(PositionStatus.FAILED),
            "deferred": result.deferred,
            "in_flight": result.in_flight,
            "elapsed_ms": result.elapsed_ms,
        }
        self._journal_event("dispatch_end", summary)
        log_dispatch_summary(
            self._logger,
            trade_id=trade.id,
            phase="dispatch",
            fanout_size=result.fanout_size,
            elapsed_ms=result.elapsed_ms,
            active=summary["active"],
            failed=summary["failed"],
            deferred=summary["deferred"],
            in_flight=result.in_flight,
        )
        return result

    def _orphaned_pending(
        self,
        trade: TradeIntent,
        seen_followers: set[str],
        result: DispatchResult,
        pass_id: str,
    ) -> list[_WorkItem]:
        """Pending rows from an earlier pass whose follower left the snapshot."""
        try:
            pending = self._positions.get_positions_for_trade(trade.id, PositionStatus.PENDING)
        except InfrastructureError as exc:
            self._logger.warning("orphan_scan_deferred", trade_id=trade.id, error=str(exc))
            result.outcomes.append(
                FollowerOutcome(
                    follower_id="",
                    position_id="",
                    action="resumed",
                    status=PositionStatus.PENDING,
                    failure_reason=exc.kind,
                    deferred=True,
                )
            )
            return []
        return [
            _WorkItem(position, "resumed", pass_id)
            for position in pending
            if position.follower_id not in seen_followers
        ]

    def _execute_entry(self, trade: TradeIntent, item: _WorkItem) -> FollowerOutcome:
        position = item.position
        log = self._logger.bind(
            trade_id=trade.id, follower_id=position.follower_id, position_id=position.id
        )
        try:
            if not self._positions.claim(
                position.id,
                item.owner,
                expected_status=PositionStatus.PENDING,
                ttl_seconds=self._claim_ttl_seconds,
            ):
                log.info("position_claimed_elsewhere")
                return _deferred(position, item.action, "ClaimedElsewhere")
            if position.allocated_amount <= 0:
                raise ZeroAllocation(
                    f"allocation={position.allocated_amount} confidence={trade.confidence}"
                )
            signer = self._custodian.get_signer(position.follower_id)
            fill = open_position(
                self._venue,
                trade,
                position.allocated_amount,
                signer,
                client_ref=f"{position.id}:entry",
            )
        except (VenueError, KeyNotFound) as exc:
            return self._fail_entry(item, exc.kind, exc.message, log)
        except InfrastructureError as exc:
            log.warning("follower_deferred", error_kind=exc.kind, error=exc.message)
            self._release_quietly(position.id, item.owner, log)
            return _deferred(position, item.action, exc.kind)
        except CopyTradeError as exc:
            return self._fail_entry(item, exc.kind, exc.message, log)
        except Exception as exc:  # noqa: BLE001 - one follower must never abort its siblings
            log.exception("follower_unexpected_error", error=str(exc))
            return self._fail_entry(item, "UnexpectedError", str(exc), log)

        try:
            updated = self._positions.update_status(
                position.id,
                PositionStatus.ACTIVE,
                expected_status=PositionStatus.PENDING,
                claimed_by=item.owner,
                actual_amount=fill.committed,
                entry_tx_ref=fill.tx_ref,
                venue_position_ref=fill.position_ref,
                filled_quantity=fill.filled_quantity,
            )
        except InfrastructureError as exc:
            # the claim is kept until it expires; the next pass replays the same
            # client_ref and the venue answers with the original receipt
            log.error("entry_fill_not_recorded", tx_ref=fill.tx_ref, error=exc.message)
            return _deferred(position, item.action, exc.kind)
        except InvalidTransition:
            # a later pass took over the lease and replays the same client_ref
            log.warning("entry_fill_recorded_elsewhere", tx_ref=fill.tx_ref)
            return self._superseded(item, PositionStatus.PENDING)

        self._journal_event(
            "position_result",
            {
                "trade_id": trade.id,
                "position_id": position.id,
                "follower_id": position.follower_id,
                "status": updated.status.value,
                "actual_amount": updated.actual_amount,
                "entry_tx_ref": updated.entry_tx_ref,
            },
        )
        return FollowerOutcome(
            follower_id=position.follower_id,
            position_id=position.id,
            action=item.action,
            status=updated.status,
            amount=updated.actual_amount,
        )

    def _fail_entry(
        self,
        item: _WorkItem,
        reason: str,
        detail: str,
        log: Any,
    ) -> FollowerOutcome:
        position, action = item.position, item.action
        log.warning("follower_failed", failure_reason=reason, detail=detail)
        try:
            updated = self._positions.update_status(
                position.id,
                PositionStatus.FAILED,
                expected_status=PositionStatus.PENDING,
                claimed_by=item.owner,
                actual_amount=0.0,
                failure_reason=reason,
                failure_detail=detail,
            )
        except InfrastructureError as exc:
            log.warning("follower_failure_not_recorded", error=exc.message)
            return _deferred(position, action, exc.kind)
        except InvalidTransition:
            # the lease moved to a later pass; its outcome wins over this stale one
            log.warning("follower_failure_superseded", failure_reason=reason)
            return self._superseded(item, PositionStatus.PENDING)

        self._journal_event(
            "position_result",
            {
                "trade_id": position.trade_id,
                "position_id": position.id,
                "follower_id": position.follower_id,
                "status": updated.status.value,
                "failure_reason": reason,
                "failure_detail": detail,
            },
        )
        return FollowerOutcome(
            follower_id=position.follower_id,
            position_id=position.id,
            action=action,
            status=updated.status,
            failure_reason=reason,
        )

    # =================================================================== close
    def close_trade(
        self,
        trade_id: str,
        exit_parameters: dict[str, Any] | None = None,
    ) -> CloseResult:
        """Unwind every active follower position, then close the trade.

        A position whose exit fails stays active with ``close_error`` set and
        the trade stays active; calling ``close_trade`` again retries only the
        positions that are still open.
        """
        started = perf_counter()
        pass_id = uuid.uuid4().hex
        trade = self._trades.get_trade(trade_id)
        if trade.status != TradeStatus.ACTIVE:
            raise InvalidTransition(f"trade {trade_id}: {trade.status.value} -> closed")
        exit_params = parse_exit_parameters(exit_parameters)
        open_positions = self._positions.get_positions_for_trade(trade.id, PositionStatus.ACTIVE)

        result = CloseResult(trade_id=trade.id, trade_status=trade.status)
        self._journal_event(
            "close_start", {"trade_id": trade.id, "open_positions": len(open_positions)}
        )

        work = [_WorkItem(position, "resumed", pass_id) for position in open_positions]
        result.outcomes.extend(
            self._run_concurrently(
                [
                    lambda item=item: self._execute_exit(trade, item, exit_params)
                    for item in work
                ],
                work,
                phase="close",
            )
        )

        remaining = self._positions.get_positions_for_trade(trade.id, OPEN_POSITION_STATUSES)
        if not remaining:
            result.trade_status = self._trades.close_trade(trade.id, exit_parameters).status
        result.realized_pnl = sum(
            position.realized_pnl or 0.0
            for position in self._positions.get_positions_for_trade(trade.id)
        )
        result.elapsed_ms = (perf_counter() - started) * 1000

        self._journal_event(
            "close_end",
            {
                "trade_id": trade.id,
                "trade_status": result.trade_status.value,
                "closed": result.closed,
                "still_open": len(remaining),
                "realized_pnl": result.realized_pnl,
                "elapsed_ms": result.elapsed_ms,
            },
        )
        log_dispatch_summary(
            self._logger,
            trade_id=trade.id,
            phase="close",
            fanout_size=len(open_positions),
            elapsed_ms=result.elapsed_ms,
            closed=result.closed,
            still_open=len(remaining),
            realized_pnl=result.realized_pnl,
        )
        return result

    def _execute_exit(
        self,
        trade: TradeIntent,
        item: _WorkItem,
        exit_params: ExitParameters,
    ) -> FollowerOutcome:
        position = item.position
        log = self._logger.bind(
            trade_id=trade.id, follower_id=position.follower_id, position_id=position.id
        )
        attempt = position.close_attempts + 1
        try:
            if not self._positions.claim(
                position.id,
                item.owner,
                expected_status=PositionStatus.ACTIVE,
                ttl_seconds=self._claim_ttl_seconds,
            ):
                log.info("position_claimed_elsewhere")
                return _deferred(position, item.action, "ClaimedElsewhere", PositionStatus.ACTIVE)
            signer = self._custodian.get_signer(position.follower_id)
            fill = close_position(
                self._venue,
                trade,
                position,
                exit_params,
                signer,
                client_ref=f"{position.id}:exit:{attempt}",
            )
        except InfrastructureError as exc:
            log.warning("close_deferred", error_kind=exc.kind, error=exc.message)
            self._release_quietly(position.id, item.owner, log)
            return _deferred(position, item.action, exc.kind, PositionStatus.ACTIVE)
        except CopyTradeError as exc:
            return self._record_close_failure(item, exc.kind, exc.message, log)
        except Exception as exc:  # noqa: BLE001 - one follower must never abort its siblings
            log.exception("close_unexpected_error", error=str(exc))
            return self._record_close_failure(item, "UnexpectedError", str(exc), log)

        try:
            updated = self._positions.update_status(
                position.id,
                PositionStatus.CLOSED,
                expected_status=PositionStatus.ACTIVE,
                claimed_by=item.owner,
                exit_tx_ref=fill.tx_ref,
                realized_pnl=fill.realized_pnl,
                close_error=None,
                close_attempts=attempt,
            )
        except InfrastructureError as exc:
            log.error("exit_fill_not_recorded", tx_ref=fill.tx_ref, error=exc.message)
            return _deferred(position, item.action, exc.kind, PositionStatus.ACTIVE)
        except InvalidTransition:
            log.warning("exit_fill_recorded_elsewhere", tx_ref=fill.tx_ref)
            return self._superseded(item, PositionStatus.ACTIVE)

        self._journal_event(
            "close_result",
            {
                "trade_id": trade.id,
                "position_id": position.id,
                "follower_id": position.follower_id,
                "status": updated.status.value,
                "exit_tx_ref": updated.exit_tx_ref,
                "realized_pnl": updated.realized_pnl,
            },
        )
        return FollowerOutcome(
            follower_id=position.follower_id,
            position_id=position.id,
            action=item.action,
            status=updated.status,
            amount=updated.realized_pnl or 0.0,
        )

    def _record_close_failure(
        self,
        item: _WorkItem,
        reason: str,
        detail: str,
        log: Any,
    ) -> FollowerOutcome:
        position, action = item.position, item.action
        log.warning("close_failed", failure_reason=reason, detail=detail)
        try:
            self._positions.update_status(
                position.id,
                PositionStatus.ACTIVE,
                expected_status=PositionStatus.ACTIVE,
                claimed_by=item.owner,
                close_error=f"{reason}: {detail}",
                close_attempts=position.close_attempts + 1,
            )
        except InfrastructureError as exc:
            log.warning("close_failure_not_recorded", error=exc.message)
        except InvalidTransition:
            log.warning("close_failure_superseded", failure_reason=reason)
            return self._superseded(item, PositionStatus.ACTIVE)
        self._journal_event(
            "close_result",
            {
                "trade_id": position.trade_id,
                "position_id": position.id,
                "follower_id": position.follower_id,
                "status": PositionStatus.ACTIVE.value,
                "close_error": reason,
            },
        )
        return FollowerOutcome(
            follower_id=position.follower_id,
            position_id=position.id,
            action=action,
            status=PositionStatus.ACTIVE,
            failure_reason=reason,
        )

    def cancel_trade(self, trade_id: str) -> TradeIntent:
        """Withdraw a pending trade before any follower holds a stake.

        Leftover pending rows are failed with ``TradeCancelled``; an active
        row means capital is committed and raises ``HasOpenPositions``.
        """
        trade = self._trades.get_trade(trade_id)
        if trade.status != TradeStatus.PENDING:
            raise InvalidTransition(f"trade {trade_id}: {trade.status.value} -> failed")
        if self._positions.get_positions_for_trade(trade.id, PositionStatus.ACTIVE):
            raise HasOpenPositions(f"trade {trade_id} already has active positions")
        for position in self._positions.get_positions_for_trade(trade.id, PositionStatus.PENDING):
            try:
                self._positions.update_status(
                    position.id,
                    PositionStatus.FAILED,
                    expected_status=PositionStatus.PENDING,
                    failure_reason="TradeCancelled",
                    failure_detail="trade cancelled before execution",
                )
            except InvalidTransition as exc:
                # filled by a concurrent dispatch pass; a row failed meanwhile is fine
                if self._positions.get_position(position.id).status == PositionStatus.ACTIVE:
                    raise HasOpenPositions(
                        f"trade {trade_id}: position {position.id} filled during cancel"
                    ) from exc
        cancelled = self._trades.mark_failed(trade.id)
        self._journal_event(
            "trade_cancelled", {"trade_id": trade.id, "operator_id": trade.operator_id}
        )
        return cancelled

    def write_off_position(self, position_id: str, reason: str) -> FollowerPosition:
        """Record an active position lost at the venue (e.g. liquidated).

        active -> failed with the whole commitment as realized loss, so the
        trade can still close.
        """
        position = self._positions.get_position(position_id)
        updated = self._positions.update_status(
            position.id,
            PositionStatus.FAILED,
            expected_status=PositionStatus.ACTIVE,
            realized_pnl=-position.actual_amount,
            failure_reason="WrittenOff",
            failure_detail=reason,
        )
        self._logger.warning(
            "position_written_off",
            position_id=position_id,
            trade_id=position.trade_id,
            follower_id=position.follower_id,
            reason=reason,
        )
        return updated

    # ================================================================= helpers
    def _run_concurrently(
        self,
        tasks: list[Callable[[], FollowerOutcome]],
        work: list[_WorkItem],
        *,
        phase: str,
    ) -> list[FollowerOutcome]:
        if not tasks:
            return []
        outcomes: list[FollowerOutcome] = []
        workers = min(self._max_workers, len(tasks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"fanout-{phase}") as pool:
            futures = {pool.submit(task): item for task, item in zip(tasks, work)}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as exc:  # noqa: BLE001
                    self._logger.exception(
                        "follower_worker_crashed",
                        phase=phase,
                        position_id=item.position.id,
                        error=str(exc),
                    )
                    self._journal_event(
                        "error",
                        {
                            "trade_id": item.position.trade_id,
                            "position_id": item.position.id,
                            "phase": phase,
                            "message": str(exc),
                        },
                    )
                    outcomes.append(
                        _deferred(item.position, item.action, "WorkerCrashed", item.position.status)
                    )
        return outcomes

    def _superseded(self, item: _WorkItem, in_progress: PositionStatus) -> FollowerOutcome:
        """Outcome for a pass whose lease was taken over by a later pass."""
        try:
            current = self._positions.get_position(item.position.id)
        except InfrastructureError as exc:
            return _deferred(item.position, item.action, exc.kind, in_progress)
        if current.status == in_progress:
            return _deferred(current, item.action, "ClaimedElsewhere", in_progress)
        return _settled_outcome(current)

    def _release_quietly(self, position_id: str, owner: str, log: Any) -> None:
        try:
            self._positions.release(position_id, owner)
        except InfrastructureError as exc:
            log.warning("claim_release_failed", error=exc.message)

    def _journal_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        try:
            self._journal.append(event_type, payload)
        except OSError as exc:
            self._logger.warning("journal_write_failed", event_type=event_type, error=str(exc))


def _settled_outcome(position: FollowerPosition) -> FollowerOutcome:
    return FollowerOutcome(
        follower_id=position.follower_id,
        position_id=position.id,
        action="skipped",
        status=position.status,
        amount=position.actual_amount,
        failure_reason=position.failure_reason,
    )


def _deferred(
    position: FollowerPosition,
    action: FollowerAction,
    reason: str,
    status: PositionStatus = PositionStatus.PENDING,
) -> FollowerOutcome:
    return FollowerOutcome(
        follower_id=position.follower_id,
        position_id=position.id,
        action=action,
        status=status,
        failure_reason=reason,
        deferred=True,
    )
