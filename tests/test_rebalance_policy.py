from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import MAAPL, MTSLA, NOW, oracle_price, position_item
from risk.rebalance_policy import PolicyTolerances, balance_ratio, delta_ratio, evaluate_position
from schemas.chain import BatchGetPositionInfoItem, OraclePriceResponse
from schemas.positions import OracleQuote, Position, ReasonCode

TOL = PolicyTolerances(
    delta_tolerance=Decimal("0.01"),
    balance_tolerance=Decimal("0.05"),
    time_tolerance=60,
)


def _position(position_id: int = 1, **fields) -> Position:
    item = BatchGetPositionInfoItem.model_validate(position_item(position_id, **fields))
    return Position.from_chain(position_id, item)


def _quotes(age_sec: int = 0, asset: str = MAAPL, label: str = "mAAPL"):
    resp = OraclePriceResponse.model_validate(oracle_price(NOW - timedelta(seconds=age_sec)))
    return {asset: OracleQuote.from_chain(asset, label, resp)}


def test_collateral_ratio_below_min_rebalances_crl():
    verdict = evaluate_position(_position(collateral_ratio="2.2"), _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.CR_BELOW_MIN
    assert verdict.should_rebalance
    assert verdict.audit_log.startswith("position 1:")


def test_balanced_position_is_no_action():
    # idle = 10 / 1000 = 0.01 <= 0.05
    verdict = evaluate_position(_position(collateral_ratio="2.5"), _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.NO_ACTION
    assert not verdict.should_rebalance


def test_low_collateral_wins_over_delta_and_balance():
    position = _position(collateral_ratio="1.9", short="150", long="100", uusd_balance="900")
    verdict = evaluate_position(position, _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.CR_BELOW_MIN


def test_missing_quote_is_no_action_regardless_of_state():
    position = _position(collateral_ratio="1.0", short="500", long="1", asset=MTSLA)
    verdict = evaluate_position(position, _quotes(asset=MAAPL), TOL, now=NOW)
    assert verdict.reason is ReasonCode.NO_ACTION
    assert "no oracle quote" in verdict.audit_log


def test_stale_quote_is_no_action():
    verdict = evaluate_position(_position(collateral_ratio="1.0"), _quotes(age_sec=61), TOL, now=NOW)
    assert verdict.reason is ReasonCode.NO_ACTION
    assert "stale" in verdict.audit_log


def test_quote_exactly_at_time_tolerance_is_fresh():
    verdict = evaluate_position(_position(collateral_ratio="1.0"), _quotes(age_sec=60), TOL, now=NOW)
    assert verdict.reason is ReasonCode.CR_BELOW_MIN


@pytest.mark.parametrize(
    "unclaimed, claimable, expected",
    [
        ("0", "0", ReasonCode.CR_ABOVE_MAX),
        ("50", "50", ReasonCode.CR_ABOVE_MAX),
        ("50", "20", ReasonCode.NO_ACTION),
    ],
)
def test_high_collateral_requires_settled_short_proceeds(unclaimed, claimable, expected):
    position = _position(collateral_ratio="3.1", unclaimed=unclaimed, claimable=claimable, uusd_balance="0")
    verdict = evaluate_position(position, _quotes(), TOL, now=NOW)
    assert verdict.reason is expected


def test_delta_drift_beyond_tolerance():
    verdict = evaluate_position(_position(short="103", long="100"), _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.DELTA_DRIFT


def test_delta_exactly_at_tolerance_is_not_drift():
    verdict = evaluate_position(_position(short="101", long="100"), _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.NO_ACTION


def test_short_against_empty_long_leg_is_drift():
    verdict = evaluate_position(_position(short="5", long="0"), _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.DELTA_DRIFT


def test_idle_balance_rebalances():
    position = _position(uusd_balance="40", claimable="5", mir_reward="10", spec_reward="6")
    verdict = evaluate_position(position, _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.IDLE_BALANCE


def test_idle_balance_is_held_while_short_proceeds_are_locked():
    position = _position(uusd_balance="200", unclaimed="30", claimable="0")
    verdict = evaluate_position(position, _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.NO_ACTION


def test_zero_position_value_skips_balance_rule():
    position = _position(uusd_balance="200", uusd_value="0")
    verdict = evaluate_position(position, _quotes(), TOL, now=NOW)
    assert verdict.reason is ReasonCode.NO_ACTION


def test_evaluation_is_idempotent():
    position = _position(short="120", long="100")
    quotes = _quotes()
    first = evaluate_position(position, quotes, TOL, now=NOW)
    second = evaluate_position(position, quotes, TOL, now=NOW)
    assert first == second


def test_closed_position_is_rejected():
    with pytest.raises(ValueError):
        evaluate_position(_position(closed=True), _quotes(), TOL, now=NOW)


def test_memo_entry_uses_asset_label():
    verdict = evaluate_position(_position(7, collateral_ratio="2.0"), _quotes(label="mAAPL"), TOL, now=NOW)
    assert verdict.memo_entry == "7,mAAPL,CRL"
    assert verdict.contract_addr == "terra1position7"


def test_ratios_are_exact_decimals():
    detail = _position(short="100.3", long="100", uusd_balance="0.1", uusd_value="3").detail
    assert delta_ratio(detail) == Decimal("0.003")
    assert balance_ratio(detail) == Decimal("0.1") / Decimal("3")
