"""Entry/exit parameter schemas and strict parsing helpers."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from copy_trading.errors import InvalidParameters
from copy_trading.types import TradeKind

_ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


class SwapParameters(BaseModel):
    """Spot swap of token_in for token_out."""

    model_config = ConfigDict(extra="forbid")

    token_in: str = Field(pattern=_ADDRESS_PATTERN)
    token_out: str = Field(pattern=_ADDRESS_PATTERN)
    amount_in: float = Field(gt=0.0)
    min_amount_out: float = Field(default=0.0, ge=0.0)


class AddLiquidityParameters(BaseModel):
    """Deposit of a token pair into a pool."""

    model_config = ConfigDict(extra="forbid")

    token_a: str = Field(pattern=_ADDRESS_PATTERN)
    token_b: str = Field(pattern=_ADDRESS_PATTERN)
    amount_a: float = Field(gt=0.0)
    amount_b: float = Field(gt=0.0)


class RemoveLiquidityParameters(BaseModel):
    """Withdrawal of pool liquidity back into the token pair."""

    model_config = ConfigDict(extra="forbid")

    token_a: str = Field(pattern=_ADDRESS_PATTERN)
    token_b: str = Field(pattern=_ADDRESS_PATTERN)
    liquidity: float = Field(gt=0.0)
    min_amount_a: float = Field(default=0.0, ge=0.0)
    min_amount_b: float = Field(default=0.0, ge=0.0)


class LeveragedParameters(BaseModel):
    """Leveraged perpetual position; direction comes from the trade kind."""

    model_config = ConfigDict(extra="forbid")

    asset: str = Field(min_length=1, max_length=64)
    size: float = Field(gt=0.0)
    leverage: float = Field(ge=1.0, le=100.0)


class ExitParameters(BaseModel):
    """Optional operator hints for unwinding positions."""

    model_config = ConfigDict(extra="allow")

    min_amount_out: float = Field(default=0.0, ge=0.0)
    min_amount_a: float = Field(default=0.0, ge=0.0)
    min_amount_b: float = Field(default=0.0, ge=0.0)
    # token_b per token_a when re-depositing withdrawn liquidity
    pair_ratio: float = Field(default=1.0, gt=0.0)


EntryParameters = (
    SwapParameters | AddLiquidityParameters | RemoveLiquidityParameters | LeveragedParameters
)

_SCHEMAS: dict[TradeKind, type[BaseModel]] = {
    TradeKind.SPOT_SWAP: SwapParameters,
    TradeKind.ADD_LIQUIDITY: AddLiquidityParameters,
    TradeKind.REMOVE_LIQUIDITY: RemoveLiquidityParameters,
    TradeKind.LEVERAGED_LONG: LeveragedParameters,
    TradeKind.LEVERAGED_SHORT: LeveragedParameters,
}


def parse_kind(raw: TradeKind | str) -> TradeKind:
    """Map a raw kind string to ``TradeKind`` or raise ``InvalidParameters``."""
    try:
        return TradeKind(raw)
    except ValueError as exc:
        raise InvalidParameters(f"unsupported_trade_kind: {raw}") from exc


def parse_entry_parameters(kind: TradeKind, payload: dict[str, Any]) -> EntryParameters:
    """Validate a raw payload against the schema for ``kind``."""
    if not isinstance(payload, dict):
        raise InvalidParameters("entry_parameters_not_object")
    schema = _SCHEMAS[kind]
    try:
        return schema.model_validate(payload)  # type: ignore[return-value]
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidParameters(
            f"invalid_entry_parameters[{kind.value}]: {location}: {first['msg']}"
        ) from exc


def parse_exit_parameters(payload: dict[str, Any] | None) -> ExitParameters:
    if payload is None:
        return ExitParameters()
    try:
        return ExitParameters.model_validate(payload)
    except ValidationError as exc:
        raise InvalidParameters(
            f"invalid_exit_parameters: {exc.errors()[0]['msg']}"
        ) from exc
