"""Domain records shared by the fetch, policy and dispatch stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from schemas.chain import BatchGetPositionInfoItem, OraclePriceResponse


@dataclass(frozen=True, slots=True)
class PositionDetail:
    collateral_ratio: Decimal
    target_min: Decimal
    target_max: Decimal
    short_amount: Decimal
    long_amount: Decimal
    uusd_value: Decimal
    unclaimed_short_proceeds: Decimal
    claimable_short_proceeds: Decimal
    claimable_reward_a: Decimal
    claimable_reward_b: Decimal
    cash_balance: Decimal
    tracked_asset_addr: str

    @property
    def has_locked_proceeds(self) -> bool:
        """Short proceeds exist but none of them can be claimed yet."""
        return self.unclaimed_short_proceeds != 0 and self.claimable_short_proceeds == 0

    @property
    def idle_balance(self) -> Decimal:
        return (
            self.claimable_short_proceeds
            + self.claimable_reward_a
            + self.claimable_reward_b
            + self.cash_balance
        )


@dataclass(frozen=True, slots=True)
class Position:
    """A delta-neutral position; ``detail is None`` means it has been closed."""

    id: int
    contract_addr: str
    tracked_asset_addr: str
    detail: Optional[PositionDetail] = None

    @property
    def is_closed(self) -> bool:
        return self.detail is None

    @classmethod
    def from_chain(cls, position_id: int, item: BatchGetPositionInfoItem) -> "Position":
        asset = item.info.mirror_asset_cw20_addr
        info = item.info.detailed_info
        detail: Optional[PositionDetail] = None
        if info is not None:
            detail = PositionDetail(
                collateral_ratio=info.collateral_ratio,
                target_min=info.target_collateral_ratio_range.min,
                target_max=info.target_collateral_ratio_range.max,
                short_amount=info.state.mirror_asset_short_amount,
                long_amount=info.state.mirror_asset_long_amount,
                uusd_value=info.uusd_value,
                unclaimed_short_proceeds=info.unclaimed_short_proceeds_uusd_amount,
                claimable_short_proceeds=info.claimable_short_proceeds_uusd_amount,
                claimable_reward_a=info.claimable_mir_reward_uusd_value,
                claimable_reward_b=info.claimable_spec_reward_uusd_value,
                cash_balance=info.state.uusd_balance,
                tracked_asset_addr=asset,
            )
        return cls(id=position_id, contract_addr=item.contract, tracked_asset_addr=asset, detail=detail)


@dataclass(frozen=True, slots=True)
class OracleQuote:
    asset_addr: str
    last_updated_at: datetime
    label: str
    rate: Optional[Decimal] = None

    @classmethod
    def from_chain(cls, asset_addr: str, label: str, resp: OraclePriceResponse) -> "OracleQuote":
        return cls(
            asset_addr=asset_addr,
            last_updated_at=datetime.fromtimestamp(resp.last_updated_base, timezone.utc),
            label=label,
            rate=resp.rate,
        )


class ReasonCode(str, Enum):
    CR_BELOW_MIN = "CRL"
    CR_ABOVE_MAX = "CRG"
    DELTA_DRIFT = "DL"
    IDLE_BALANCE = "BAL"
    NO_ACTION = "NA"


@dataclass(frozen=True, slots=True)
class RebalanceVerdict:
    position_id: int
    reason: ReasonCode
    audit_log: str
    contract_addr: str = ""
    asset_label: str = ""
    messages: Tuple[Any, ...] = field(default_factory=tuple)

    @property
    def should_rebalance(self) -> bool:
        return self.reason is not ReasonCode.NO_ACTION

    @property
    def memo_entry(self) -> str:
        return f"{self.position_id},{self.asset_label},{self.reason.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "reason": self.reason.value,
            "audit_log": self.audit_log,
            "contract_addr": self.contract_addr,
            "asset_label": self.asset_label,
            "messages": len(self.messages),
        }
