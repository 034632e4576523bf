from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ChainQueryError(RuntimeError):
    """An on-chain query could not be completed (transport or HTTP failure)."""


class ChainSchemaError(ChainQueryError):
    """A query succeeded but its payload does not match the expected shape."""

    def __init__(self, model: str, detail: str):
        super().__init__(f"unexpected {model} payload: {detail}")
        self.model = model


class _ChainModel(BaseModel):
    # Contracts add fields over time; only the ones we read are pinned down.
    model_config = ConfigDict(extra="ignore", frozen=True)


M = TypeVar("M", bound=BaseModel)


def decode(model: Type[M], payload: Any) -> M:
    """Validate a raw query result into ``model`` or raise :class:`ChainSchemaError`."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ChainSchemaError(model.__name__, str(exc)) from exc


# ──────────────────────────────────────────────────────────────────────────────
# Terra Manager
# ──────────────────────────────────────────────────────────────────────────────

class NextPositionIdResponse(_ChainModel):
    next_position_id: int = Field(..., ge=0, description="Exclusive upper bound of issued position ids")


class StrategyMetadataResponse(_ChainModel):
    name: Optional[str] = None
    version: Optional[str] = None
    manager_addr: str = Field(..., min_length=1)


# ──────────────────────────────────────────────────────────────────────────────
# Delta-neutral position manager
# ──────────────────────────────────────────────────────────────────────────────

class PositionKey(_ChainModel):
    chain_id: int
    position_id: str


class TargetCollateralRatioRange(_ChainModel):
    min: Decimal
    max: Decimal


class PositionState(_ChainModel):
    uusd_balance: Decimal
    mirror_asset_short_amount: Decimal
    mirror_asset_long_amount: Decimal


class DetailedPositionInfo(_ChainModel):
    collateral_ratio: Decimal
    target_collateral_ratio_range: TargetCollateralRatioRange
    state: PositionState
    uusd_value: Decimal
    unclaimed_short_proceeds_uusd_amount: Decimal = Decimal(0)
    claimable_short_proceeds_uusd_amount: Decimal = Decimal(0)
    claimable_mir_reward_uusd_value: Decimal = Decimal(0)
    claimable_spec_reward_uusd_value: Decimal = Decimal(0)


class PositionInfo(_ChainModel):
    mirror_asset_cw20_addr: str
    detailed_info: Optional[DetailedPositionInfo] = None


class BatchGetPositionInfoItem(_ChainModel):
    position: PositionKey
    contract: str
    holder: Optional[str] = None
    info: PositionInfo


class BatchGetPositionInfoResponse(_ChainModel):
    items: List[BatchGetPositionInfoItem]


class PositionManagerContext(_ChainModel):
    controller: Optional[str] = None
    mirror_oracle_addr: str


# ──────────────────────────────────────────────────────────────────────────────
# Mirror oracle
# ──────────────────────────────────────────────────────────────────────────────

class OraclePriceResponse(_ChainModel):
    rate: Decimal
    last_updated_base: int = Field(..., ge=0, description="UNIX seconds of the base asset feed")
    last_updated_quote: int = Field(0, ge=0)


# ──────────────────────────────────────────────────────────────────────────────
# Query payloads
# ──────────────────────────────────────────────────────────────────────────────

def next_position_id_query() -> Dict[str, Any]:
    return {"get_next_position_id": {}}


def strategy_metadata_query(strategy_id: str) -> Dict[str, Any]:
    return {"get_strategy_metadata": {"strategy_id": str(strategy_id)}}


def position_info_query(position_id: int, *, chain_id: int) -> Dict[str, Any]:
    return {
        "batch_get_position_info": {
            "positions": [{"chain_id": chain_id, "position_id": str(position_id)}],
        }
    }


def manager_context_query() -> Dict[str, Any]:
    return {"get_context": {}}


def oracle_price_query(asset_addr: str) -> Dict[str, Any]:
    return {"price": {"base_asset": asset_addr, "quote_asset": "uusd"}}
