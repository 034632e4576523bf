from __future__ import annotations

from typing import List, Optional, Sequence

from monitoring.metrics import (
    CLOSED_POSITION_SKIPPED,
    GET_POSITION_INFO_FAILURE,
    TOTAL_POSITION_COVERED,
    MetricsRecorder,
)
from schemas.chain import BatchGetPositionInfoResponse, ChainSchemaError, decode, position_info_query
from schemas.positions import Position
from sources.terra_lcd import ChainQuerier
from utils.parallel import bounded_map
from utils.retry import RetryPolicy
from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.positions")


async def fetch_position(
    querier: ChainQuerier,
    position_manager: str,
    position_id: int,
    *,
    chain_id: int,
    retry: RetryPolicy,
) -> Position:
    raw = await retry.run(
        lambda: querier.query(position_manager, position_info_query(position_id, chain_id=chain_id)),
        label=f"position info {position_id}",
    )
    resp = decode(BatchGetPositionInfoResponse, raw)
    if len(resp.items) != 1:
        raise ChainSchemaError("BatchGetPositionInfoResponse", f"expected 1 item for position {position_id}, got {len(resp.items)}")
    return Position.from_chain(position_id, resp.items[0])


async def fetch_positions(
    querier: ChainQuerier,
    position_manager: str,
    next_position_id: int,
    *,
    chain_id: int,
    concurrency: int,
    retry: RetryPolicy,
    metrics: MetricsRecorder,
) -> List[Position]:
    """Fetch positions ``[0, next_position_id)`` in id order.

    Ids that cannot be read are logged, counted and dropped.
    """
    ids = list(range(next_position_id))

    async def _fetch(position_id: int) -> Optional[Position]:
        try:
            return await fetch_position(querier, position_manager, position_id, chain_id=chain_id, retry=retry)
        except Exception as exc:
            LOG.warning("position %d info unavailable: %s", position_id, exc)
            metrics.plus_one(GET_POSITION_INFO_FAILURE)
            return None

    LOG.info("fetching %d positions from %s (concurrency=%d)", len(ids), position_manager, concurrency)
    results = await bounded_map(ids, _fetch, limit=concurrency)
    positions = [p for p in results if p is not None]
    metrics.plus_n(TOTAL_POSITION_COVERED, len(positions))
    LOG.info("positions fetched: %d/%d", len(positions), len(ids))
    return positions


def open_positions(positions: Sequence[Position], metrics: MetricsRecorder) -> List[Position]:
    """Drop closed positions; they never reach the policy or the dispatcher."""
    out: List[Position] = []
    for position in positions:
        if position.is_closed:
            LOG.info("position %d is closed", position.id)
            metrics.plus_one(CLOSED_POSITION_SKIPPED)
            continue
        out.append(position)
    return out
