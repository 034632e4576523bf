from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Tuple

from monitoring.metrics import ORACLE_PRICE_QUERY_FAILURE, MetricsRecorder
from schemas.chain import OraclePriceResponse, decode, oracle_price_query
from schemas.positions import OracleQuote
from sources.terra_lcd import ChainQuerier
from utils.parallel import bounded_map
from utils.retry import RetryPolicy
from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.oracle")


async def fetch_oracle_quotes(
    querier: ChainQuerier,
    oracle_addr: str,
    tracked_assets: Mapping[str, str],
    *,
    concurrency: int,
    retry: RetryPolicy,
    metrics: MetricsRecorder,
) -> Dict[str, OracleQuote]:
    """Latest oracle quote per tracked asset.

    Assets whose price cannot be read after the retry budget are left out of the
    result; the policy treats a missing quote as "do nothing".
    """
    assets: List[Tuple[str, str]] = list(tracked_assets.items())

    async def _fetch(entry: Tuple[str, str]) -> Optional[OracleQuote]:
        addr, label = entry
        try:
            raw = await retry.run(
                lambda: querier.query(oracle_addr, oracle_price_query(addr)),
                label=f"oracle price {label}",
            )
            return OracleQuote.from_chain(addr, label, decode(OraclePriceResponse, raw))
        except Exception as exc:
            LOG.warning("oracle price for %s (%s) unavailable: %s", label, addr, exc)
            metrics.plus_one(ORACLE_PRICE_QUERY_FAILURE)
            return None

    LOG.info("fetching oracle prices for %d assets (concurrency=%d)", len(assets), concurrency)
    results = await bounded_map(assets, _fetch, limit=concurrency)
    quotes = {quote.asset_addr: quote for quote in results if quote is not None}
    LOG.info("oracle prices fetched: %d/%d", len(quotes), len(assets))
    return quotes
