"""Run-scoped counters for the rebalance controller.

Tracks:
- Setup failures (position count, strategy registry, account sequence)
- Per-item fetch failures (positions, oracle prices)
- Policy outcomes per reason code
- Transaction outcomes per batch
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Mapping, Optional, Protocol

from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.metrics")

CONTROLLER_START = "CONTROLLER_START"
GET_NEXT_POSITION_ID_FAILURE = "GET_NEXT_POSITION_ID_FAILURE"
GET_POSITION_MANAGER_FAILURE = "GET_POSITION_MANAGER_FAILURE"
GET_POSITION_INFO_FAILURE = "GET_POSITION_INFO_FAILURE"
ORACLE_PRICE_QUERY_FAILURE = "ORACLE_PRICE_QUERY_FAILURE"
TOTAL_POSITION_COVERED = "TOTAL_POSITION_COVERED"
CLOSED_POSITION_SKIPPED = "CLOSED_POSITION_SKIPPED"
POSITION_EVALUATED = "POSITION_EVALUATED"
NO_ACTION = "NO_ACTION"
REBALANCE_CRL = "REBALANCE_CRL"
REBALANCE_CRG = "REBALANCE_CRG"
REBALANCE_DL = "REBALANCE_DL"
REBALANCE_BAL = "REBALANCE_BAL"
GET_ACCOUNT_SEQUENCE_FAILURE = "GET_ACCOUNT_SEQUENCE_FAILURE"
TX_SIGNING_FAILURE = "TX_SIGNING_FAILURE"
TX_BROADCAST_FAILURE = "TX_BROADCAST_FAILURE"
TX_CHAIN_FAILURE = "TX_CHAIN_FAILURE"
TX_BROADCAST_SUCCESS = "TX_BROADCAST_SUCCESS"
TX_DRY_RUN = "TX_DRY_RUN"

COUNTER_SCHEMA = (
    CONTROLLER_START,
    GET_NEXT_POSITION_ID_FAILURE,
    GET_POSITION_MANAGER_FAILURE,
    GET_POSITION_INFO_FAILURE,
    ORACLE_PRICE_QUERY_FAILURE,
    TOTAL_POSITION_COVERED,
    CLOSED_POSITION_SKIPPED,
    POSITION_EVALUATED,
    NO_ACTION,
    REBALANCE_CRL,
    REBALANCE_CRG,
    REBALANCE_DL,
    REBALANCE_BAL,
    GET_ACCOUNT_SEQUENCE_FAILURE,
    TX_SIGNING_FAILURE,
    TX_BROADCAST_FAILURE,
    TX_CHAIN_FAILURE,
    TX_BROADCAST_SUCCESS,
    TX_DRY_RUN,
)

REASON_COUNTERS = {
    "CRL": REBALANCE_CRL,
    "CRG": REBALANCE_CRG,
    "DL": REBALANCE_DL,
    "BAL": REBALANCE_BAL,
    "NA": NO_ACTION,
}


class MetricsSink(Protocol):
    def publish(self, metrics: Mapping[str, int], *, dimension: str) -> None:
        ...


class MetricsRecorder:
    """Thread-safe fixed-schema counters, flushed once per run."""

    def __init__(self, schema: Iterable[str] = COUNTER_SCHEMA) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in schema}
        self._flushed = False

    def plus_n(self, name: str, count: int) -> "MetricsRecorder":
        with self._lock:
            if name not in self._counters:
                raise KeyError(f"unknown counter {name!r}")
            self._counters[name] += int(count)
        return self

    def plus_one(self, name: str) -> "MetricsRecorder":
        return self.plus_n(name, 1)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def flush(self, sink: Optional[MetricsSink], *, dimension: str) -> bool:
        """Publish every counter tagged with ``dimension``.

        Only the first call publishes. Sink errors are logged and swallowed so a
        telemetry outage never changes the run's outcome.
        """
        with self._lock:
            if self._flushed:
                LOG.warning("metrics already flushed for this run; ignoring")
                return False
            self._flushed = True
            payload = dict(self._counters)

        if sink is None:
            LOG.info("metrics (no sink configured): %s", payload)
            return True
        try:
            sink.publish(payload, dimension=dimension)
        except Exception as exc:
            LOG.error("failed to publish metrics for %s: %r", dimension, exc)
            return False
        LOG.info("published %d metrics for %s", len(payload), dimension)
        return True
