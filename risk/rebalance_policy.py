"""Rebalance policy for delta-neutral positions.

The evaluator is a pure function of one open position, the oracle quotes and the
tolerances. Rules are checked in a fixed order and the first match wins:

    a. no oracle quote for the tracked asset          -> NA
    b. quote older than ``time_tolerance`` seconds     -> NA
    c. collateral ratio below target min               -> CRL
    d. collateral ratio above target max and short
       proceeds are either absent or fully claimable   -> CRG
    e. |short - long| / long > delta_tolerance         -> DL
    f. idle balance / position value > balance
       tolerance and no short proceeds are locked      -> BAL
    g. otherwise                                       -> NA

All arithmetic is done on ``Decimal``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping, Optional

from schemas.positions import OracleQuote, Position, PositionDetail, ReasonCode, RebalanceVerdict


@dataclass(frozen=True)
class PolicyTolerances:
    delta_tolerance: Decimal
    balance_tolerance: Decimal
    time_tolerance: int  # seconds

    @classmethod
    def from_config(cls, config) -> "PolicyTolerances":
        return cls(
            delta_tolerance=Decimal(config.delta_tolerance),
            balance_tolerance=Decimal(config.balance_tolerance),
            time_tolerance=int(config.time_tolerance),
        )


def _verdict(position: Position, reason: ReasonCode, audit: str, label: str = "") -> RebalanceVerdict:
    return RebalanceVerdict(
        position_id=position.id,
        reason=reason,
        audit_log=f"position {position.id}: {audit}",
        contract_addr=position.contract_addr,
        asset_label=label or position.tracked_asset_addr,
    )


def delta_ratio(detail: PositionDetail) -> Optional[Decimal]:
    """Relative short/long imbalance; ``None`` when there is no long leg to compare to."""
    if detail.long_amount == 0:
        return None
    return abs(detail.short_amount - detail.long_amount) / detail.long_amount


def balance_ratio(detail: PositionDetail) -> Optional[Decimal]:
    if detail.uusd_value == 0:
        return None
    return detail.idle_balance / detail.uusd_value


def evaluate_position(
    position: Position,
    quotes: Mapping[str, OracleQuote],
    tolerances: PolicyTolerances,
    *,
    now: datetime,
) -> RebalanceVerdict:
    detail = position.detail
    if detail is None:
        raise ValueError(f"position {position.id} is closed and cannot be evaluated")

    quote = quotes.get(detail.tracked_asset_addr)
    if quote is None:
        return _verdict(position, ReasonCode.NO_ACTION, f"no oracle quote for {detail.tracked_asset_addr}")
    label = quote.label

    age = now - quote.last_updated_at
    if age > timedelta(seconds=tolerances.time_tolerance):
        return _verdict(
            position,
            ReasonCode.NO_ACTION,
            f"oracle price for {label} is stale ({int(age.total_seconds())}s > {tolerances.time_tolerance}s)",
            label,
        )

    cr = detail.collateral_ratio
    if cr < detail.target_min:
        return _verdict(position, ReasonCode.CR_BELOW_MIN, f"CR {cr} below target min {detail.target_min}", label)

    proceeds_settled = (
        detail.unclaimed_short_proceeds == 0
        or detail.unclaimed_short_proceeds == detail.claimable_short_proceeds
    )
    if cr > detail.target_max and proceeds_settled:
        return _verdict(position, ReasonCode.CR_ABOVE_MAX, f"CR {cr} above target max {detail.target_max}", label)

    delta = delta_ratio(detail)
    if delta is None and detail.short_amount != 0:
        return _verdict(position, ReasonCode.DELTA_DRIFT, f"short {detail.short_amount} against empty long leg", label)
    if delta is not None and delta > tolerances.delta_tolerance:
        return _verdict(
            position,
            ReasonCode.DELTA_DRIFT,
            f"delta {delta} exceeds tolerance {tolerances.delta_tolerance}",
            label,
        )

    balance = balance_ratio(detail)
    if balance is not None and balance > tolerances.balance_tolerance and not detail.has_locked_proceeds:
        return _verdict(
            position,
            ReasonCode.IDLE_BALANCE,
            f"idle balance ratio {balance} exceeds tolerance {tolerances.balance_tolerance}",
            label,
        )

    return _verdict(position, ReasonCode.NO_ACTION, f"within policy (CR {cr}, delta {delta}, balance {balance})", label)
