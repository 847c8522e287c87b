from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from copy_trading.config import Settings
from copy_trading.db.engine import Database
from copy_trading.pipeline import Pipeline, build_pipeline
from copy_trading.venue.paper import PaperVenue

TOKEN_A = "0x" + "a1" * 20
TOKEN_B = "0x" + "b2" * 20


def swap_params(amount_in: float = 1000.0, min_amount_out: float = 0.0) -> dict[str, object]:
    return {
        "token_in": TOKEN_A,
        "token_out": TOKEN_B,
        "amount_in": amount_in,
        "min_amount_out": min_amount_out,
    }


def perp_params(size: float = 500.0, leverage: float = 5.0) -> dict[str, object]:
    return {"asset": "ETH", "size": size, "leverage": leverage}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        journal_dir=tmp_path / "journal",
        wallet_encryption_key="unit-test-passphrase",
        dispatch_max_workers=4,
        paper_slippage_bps=0.0,
    )


@pytest.fixture
def database(settings: Settings) -> Iterator[Database]:
    db = Database.from_settings(settings)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def venue() -> PaperVenue:
    return PaperVenue(slippage_bps=0.0)


@pytest.fixture
def pipeline(settings: Settings, database: Database, venue: PaperVenue) -> Pipeline:
    return build_pipeline(settings, venue=venue, database=database)
