from __future__ import annotations

import pytest

from conftest import MAAPL, MTSLA, ORACLE, POSITION_MANAGER, oracle_price, position_item, standard_chain
from monitoring.metrics import (
    CLOSED_POSITION_SKIPPED,
    GET_POSITION_INFO_FAILURE,
    ORACLE_PRICE_QUERY_FAILURE,
    TOTAL_POSITION_COVERED,
)
from schemas.chain import ChainQueryError, ChainSchemaError
from services.oracle_fetcher import fetch_oracle_quotes
from services.position_fetcher import fetch_position, fetch_positions, open_positions

TRACKED = {MAAPL: "mAAPL", MTSLA: "mTSLA"}


@pytest.mark.asyncio
async def test_oracle_failures_are_omitted_and_metered(fast_retry, metrics):
    querier = standard_chain({}, prices={MAAPL: oracle_price(), MTSLA: ChainQueryError("timeout")})

    quotes = await fetch_oracle_quotes(querier, ORACLE, TRACKED, concurrency=2, retry=fast_retry, metrics=metrics)

    assert set(quotes) == {MAAPL}
    assert quotes[MAAPL].label == "mAAPL"
    assert metrics.get(ORACLE_PRICE_QUERY_FAILURE) == 1
    # one attempt plus three retries for the failing asset
    assert querier.count("price") == 1 + 4


@pytest.mark.asyncio
async def test_positions_are_fetched_in_id_order_and_failures_dropped(fast_retry, metrics):
    items = {i: position_item(i) for i in range(6)}
    items[3] = ChainQueryError("node unavailable")
    querier = standard_chain(items)

    positions = await fetch_positions(
        querier, POSITION_MANAGER, 6, chain_id=3, concurrency=3, retry=fast_retry, metrics=metrics
    )

    assert [p.id for p in positions] == [0, 1, 2, 4, 5]
    assert metrics.get(GET_POSITION_INFO_FAILURE) == 1
    assert metrics.get(TOTAL_POSITION_COVERED) == 5


@pytest.mark.asyncio
async def test_zero_positions_makes_no_queries(fast_retry, metrics):
    querier = standard_chain({})
    positions = await fetch_positions(
        querier, POSITION_MANAGER, 0, chain_id=3, concurrency=3, retry=fast_retry, metrics=metrics
    )
    assert positions == []
    assert querier.count("batch_get_position_info") == 0


@pytest.mark.asyncio
async def test_fetch_position_requires_exactly_one_item(fast_retry):
    querier = standard_chain({})
    querier.on(POSITION_MANAGER, "batch_get_position_info", {"items": []})
    with pytest.raises(ChainSchemaError):
        await fetch_position(querier, POSITION_MANAGER, 0, chain_id=3, retry=fast_retry)


@pytest.mark.asyncio
async def test_closed_positions_are_filtered_before_policy(fast_retry, metrics):
    items = {0: position_item(0), 1: position_item(1, closed=True), 2: position_item(2)}
    querier = standard_chain(items)
    positions = await fetch_positions(
        querier, POSITION_MANAGER, 3, chain_id=3, concurrency=2, retry=fast_retry, metrics=metrics
    )

    live = open_positions(positions, metrics)

    assert [p.id for p in live] == [0, 2]
    assert metrics.get(CLOSED_POSITION_SKIPPED) == 1
    assert metrics.get(GET_POSITION_INFO_FAILURE) == 0
