"""Wire settings into a ready-to-use fan-out pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from copy_trading.config import Settings
from copy_trading.custody.custodian import KeyCipher, WalletCustodian
from copy_trading.db.engine import Database
from copy_trading.fanout.orchestrator import FanOutOrchestrator
from copy_trading.journal.store import JournalStore
from copy_trading.ledger.positions import PositionLedger
from copy_trading.ledger.trades import TradeLedger
from copy_trading.registry.followers import FollowerRegistry
from copy_trading.registry.operators import OperatorRegistry
from copy_trading.utils.logging import get_logger
from copy_trading.venue.base import ExecutionVenue
from copy_trading.venue.http import HttpVenue
from copy_trading.venue.paper import PaperVenue

# paper mode only; live mode refuses to start without WALLET_ENCRYPTION_KEY
_PAPER_PASSPHRASE = "paper-mode-not-secret"


@dataclass(slots=True)
class Pipeline:
    settings: Settings
    database: Database
    operators: OperatorRegistry
    followers: FollowerRegistry
    trades: TradeLedger
    positions: PositionLedger
    custodian: WalletCustodian
    venue: ExecutionVenue
    journal: JournalStore
    orchestrator: FanOutOrchestrator

    def close(self) -> None:
        self.database.dispose()


def build_venue(settings: Settings) -> ExecutionVenue:
    """Paper venue in paper mode, the HTTP gateway in live mode."""
    if settings.is_live_mode:
        return HttpVenue(settings)
    return PaperVenue(slippage_bps=settings.paper_slippage_bps)


def build_pipeline(
    settings: Settings,
    *,
    venue: ExecutionVenue | None = None,
    database: Database | None = None,
) -> Pipeline:
    logger = get_logger("copy_trading.pipeline")
    settings.ensure_directories()

    passphrase = settings.wallet_encryption_key
    if not passphrase and settings.is_paper_mode:
        logger.warning("wallet_encryption_key_missing", hint="using paper-mode passphrase")
        passphrase = _PAPER_PASSPHRASE

    database = database or Database.from_settings(settings)
    operators = OperatorRegistry(database)
    followers = FollowerRegistry(database, operators)
    trades = TradeLedger(database, operators)
    positions = PositionLedger(database)
    custodian = WalletCustodian(database, KeyCipher(passphrase))
    venue = venue or build_venue(settings)
    journal = JournalStore(settings.journal_dir)
    orchestrator = FanOutOrchestrator(
        trades,
        followers,
        positions,
        custodian,
        venue,
        journal=journal,
        max_workers=settings.dispatch_max_workers,
        claim_ttl_seconds=settings.dispatch_claim_ttl_seconds,
    )
    logger.debug(
        "pipeline_built",
        mode=settings.mode.value,
        venue=type(venue).__name__,
        sqlite=database.is_sqlite,
    )
    return Pipeline(
        settings=settings,
        database=database,
        operators=operators,
        followers=followers,
        trades=trades,
        positions=positions,
        custodian=custodian,
        venue=venue,
        journal=journal,
        orchestrator=orchestrator,
    )
