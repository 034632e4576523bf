"""Rebalance controller: one pass over every delta-neutral position.

Flow:
    setup (position count, strategy registry, oracle address)
      -> oracle quotes || positions      (concurrent read-only fan-outs)
      -> policy per open position
      -> batched transactions           (strictly sequential)

The metrics recorder observes every phase and is flushed exactly once in a
``finally`` block around the whole run.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from executors.base import SequenceCounter, TxBroadcaster, TxSigner
from executors.lcd_broadcaster import LCDBroadcaster
from executors.simulated import DryRunSigner
from monitoring.metrics import (
    CONTROLLER_START,
    GET_ACCOUNT_SEQUENCE_FAILURE,
    GET_NEXT_POSITION_ID_FAILURE,
    GET_POSITION_MANAGER_FAILURE,
    POSITION_EVALUATED,
    REASON_COUNTERS,
    MetricsRecorder,
    MetricsSink,
)
from monitoring.observability import build_sink
from risk.rebalance_policy import PolicyTolerances, evaluate_position
from schemas.chain import (
    NextPositionIdResponse,
    PositionManagerContext,
    StrategyMetadataResponse,
    decode,
    manager_context_query,
    next_position_id_query,
    strategy_metadata_query,
)
from schemas.positions import OracleQuote, Position, RebalanceVerdict
from services.batch_dispatcher import BatchDispatcher, DispatchReport
from services.oracle_fetcher import fetch_oracle_quotes
from services.position_fetcher import fetch_positions, open_positions
from sources.terra_lcd import ChainQuerier, TerraLCDClient
from utils.controller_config import ConfigError, ControllerConfig
from utils.retry import RetryPolicy
from utils.structured_logging import get_logger, new_run_id, reset_run_id, set_run_id

LOG = get_logger("aperture_controller.controller")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FatalSetupError(RuntimeError):
    """The run cannot proceed: position count or strategy registry unavailable."""


@dataclass(frozen=True)
class StrategySetup:
    next_position_id: int
    position_manager: str
    oracle_addr: str


@dataclass
class RunSummary:
    run_id: str
    network: str
    positions_fetched: int = 0
    positions_open: int = 0
    quotes: int = 0
    verdicts: Dict[str, int] = field(default_factory=dict)
    dispatch: Optional[DispatchReport] = None
    duration_sec: float = 0.0
    metrics: Dict[str, int] = field(default_factory=dict)

    @property
    def rebalances(self) -> int:
        return sum(n for code, n in self.verdicts.items() if code != "NA")


# ──────────────────────────────────────────────────────────────────────────────
# Setup
# ──────────────────────────────────────────────────────────────────────────────

async def resolve_setup(
    querier: ChainQuerier,
    config: ControllerConfig,
    *,
    retry: RetryPolicy,
    metrics: MetricsRecorder,
) -> StrategySetup:
    try:
        raw = await retry.run(
            lambda: querier.query(config.terra_manager_addr, next_position_id_query()),
            label="next position id",
        )
        next_id = decode(NextPositionIdResponse, raw).next_position_id
    except Exception as exc:
        metrics.plus_one(GET_NEXT_POSITION_ID_FAILURE)
        raise FatalSetupError(f"failed to get next position id: {exc}") from exc
    LOG.info("next position id: %d", next_id)

    try:
        raw = await retry.run(
            lambda: querier.query(config.terra_manager_addr, strategy_metadata_query(config.strategy_id)),
            label="strategy metadata",
        )
        manager = decode(StrategyMetadataResponse, raw).manager_addr
        oracle = config.mirror_oracle_addr
        if not oracle:
            raw = await retry.run(lambda: querier.query(manager, manager_context_query()), label="manager context")
            oracle = decode(PositionManagerContext, raw).mirror_oracle_addr
    except Exception as exc:
        metrics.plus_one(GET_POSITION_MANAGER_FAILURE)
        raise FatalSetupError(f"failed to resolve delta-neutral position manager: {exc}") from exc
    LOG.info("delta-neutral position manager: %s, mirror oracle: %s", manager, oracle)

    return StrategySetup(next_position_id=next_id, position_manager=manager, oracle_addr=oracle)


# ──────────────────────────────────────────────────────────────────────────────
# Policy
# ──────────────────────────────────────────────────────────────────────────────

def evaluate_positions(
    positions: List[Position],
    quotes: Dict[str, OracleQuote],
    tolerances: PolicyTolerances,
    *,
    now: datetime,
    metrics: MetricsRecorder,
) -> List[RebalanceVerdict]:
    verdicts: List[RebalanceVerdict] = []
    for position in positions:
        verdict = evaluate_position(position, quotes, tolerances, now=now)
        metrics.plus_one(POSITION_EVALUATED)
        metrics.plus_one(REASON_COUNTERS[verdict.reason.value])
        if verdict.should_rebalance:
            LOG.info("rebalance %s: %s", verdict.reason.value, verdict.audit_log)
        else:
            LOG.info("skipping: %s", verdict.audit_log)
        verdicts.append(verdict)
    return verdicts


# ──────────────────────────────────────────────────────────────────────────────
# Run
# ──────────────────────────────────────────────────────────────────────────────

async def _run_pipeline(
    config: ControllerConfig,
    summary: RunSummary,
    *,
    querier: ChainQuerier,
    signer: TxSigner,
    broadcaster: Optional[TxBroadcaster],
    sequence_start: Optional[int],
    account_sequence: Optional[Callable[[str], Awaitable[int]]],
    metrics: MetricsRecorder,
    retry: RetryPolicy,
    clock: Clock,
    dry_run: bool,
) -> None:
    setup = await resolve_setup(querier, config, retry=retry, metrics=metrics)

    quotes, positions = await asyncio.gather(
        fetch_oracle_quotes(
            querier,
            setup.oracle_addr,
            config.tracked_assets,
            concurrency=config.concurrency,
            retry=retry,
            metrics=metrics,
        ),
        fetch_positions(
            querier,
            setup.position_manager,
            setup.next_position_id,
            chain_id=config.terra_chain_id,
            concurrency=config.concurrency,
            retry=retry,
            metrics=metrics,
        ),
    )
    summary.quotes = len(quotes)
    summary.positions_fetched = len(positions)

    live = open_positions(positions, metrics)
    summary.positions_open = len(live)

    verdicts = evaluate_positions(live, quotes, PolicyTolerances.from_config(config), now=clock(), metrics=metrics)
    for verdict in verdicts:
        summary.verdicts[verdict.reason.value] = summary.verdicts.get(verdict.reason.value, 0) + 1

    actionable = [v for v in verdicts if v.should_rebalance]
    if not actionable:
        LOG.info("no positions need rebalancing")
        return

    if sequence_start is None and dry_run and not config.controller_addr:
        sequence_start = 0
    if sequence_start is None:
        if account_sequence is None:
            LOG.error("no account sequence source; %d rebalances not submitted", len(actionable))
            metrics.plus_one(GET_ACCOUNT_SEQUENCE_FAILURE)
            return
        try:
            sequence_start = await account_sequence(config.controller_addr)
        except Exception as exc:
            LOG.error("failed to read account sequence for %s: %r", config.controller_addr, exc)
            metrics.plus_one(GET_ACCOUNT_SEQUENCE_FAILURE)
            return

    dispatcher = BatchDispatcher(
        signer=signer,
        broadcaster=broadcaster,
        sequence=SequenceCounter(sequence_start),
        metrics=metrics,
        sender=config.controller_addr,
        position_manager=setup.position_manager,
        batch_size=config.batch_size,
        dry_run=dry_run,
    )
    summary.dispatch = await dispatcher.dispatch(actionable)


async def _close_quietly(client, name: str) -> None:
    # Never raises; a failed close is only logged.
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as exc:
        LOG.warning("failed to close %s: %r", name, exc)


async def run_controller(
    config: ControllerConfig,
    *,
    querier: Optional[ChainQuerier] = None,
    signer: Optional[TxSigner] = None,
    broadcaster: Optional[TxBroadcaster] = None,
    sink: Optional[MetricsSink] = None,
    metrics: Optional[MetricsRecorder] = None,
    sequence_start: Optional[int] = None,
    clock: Clock = _utcnow,
    retry: Optional[RetryPolicy] = None,
) -> RunSummary:
    """Run one controller pass and always flush metrics.

    A live run needs an injected ``signer`` and ``config.controller_addr``;
    otherwise :class:`ConfigError` is raised before any I/O. Dry runs without a
    signer use :class:`DryRunSigner`. :class:`FatalSetupError` propagates after
    the flush.
    """
    if not config.dry_run:
        if signer is None:
            raise ConfigError("no transaction signer configured; set CONTROLLER_SIGNER or run with --dry-run")
        if not config.controller_addr:
            raise ConfigError("controller_addr is required to submit transactions")
    metrics = metrics or MetricsRecorder()
    retry = retry or RetryPolicy(retries=config.query_retries, delay=config.query_retry_delay_sec)
    sink = sink if sink is not None else build_sink(config.pushgateway_url)

    run_id = new_run_id()
    token = set_run_id(run_id)
    summary = RunSummary(run_id=run_id, network=config.network)
    started = time.monotonic()

    dry_run = config.dry_run
    if signer is None:
        signer = DryRunSigner(chain_id=config.chain_id)

    owned_querier: Optional[TerraLCDClient] = None
    owned_broadcaster: Optional[LCDBroadcaster] = None
    if querier is None:
        owned_querier = TerraLCDClient(lcd_url=config.lcd_url, timeout=config.http_timeout_sec)
        querier = owned_querier
    if broadcaster is None and not dry_run:
        owned_broadcaster = LCDBroadcaster(lcd_url=config.lcd_url, timeout=config.http_timeout_sec)
        broadcaster = owned_broadcaster

    account_sequence = getattr(querier, "account_sequence", None)

    if not config.tracked_assets:
        LOG.warning("no tracked assets configured; every position will resolve to no-action")

    metrics.plus_one(CONTROLLER_START)
    LOG.info("controller starting", extra={"config": dict(config.to_public_dict())})
    try:
        await _run_pipeline(
            config,
            summary,
            querier=querier,
            signer=signer,
            broadcaster=broadcaster,
            sequence_start=sequence_start,
            account_sequence=account_sequence,
            metrics=metrics,
            retry=retry,
            clock=clock,
            dry_run=dry_run,
        )
        return summary
    finally:
        try:
            summary.duration_sec = time.monotonic() - started
            summary.metrics = metrics.snapshot()
            metrics.flush(sink, dimension=config.network)
            await _close_quietly(owned_querier, "LCD query client")
            await _close_quietly(owned_broadcaster, "LCD broadcaster")
            LOG.info(
                "run summary: network=%s fetched=%d open=%d quotes=%d verdicts=%s batches=%d duration=%.2fs",
                summary.network,
                summary.positions_fetched,
                summary.positions_open,
                summary.quotes,
                summary.verdicts,
                summary.dispatch.batches if summary.dispatch else 0,
                summary.duration_sec,
            )
        finally:
            reset_run_id(token)
