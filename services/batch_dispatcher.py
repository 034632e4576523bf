"""Batch rebalance verdicts into signed transactions and submit them in order.

Every batch consumes exactly one account sequence number at signing time. The
counter advances even when signing or broadcasting fails afterwards, and one
batch's failure never stops the batches after it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from executors.base import (
    ExecuteContractMsg,
    SequenceCounter,
    TxBroadcaster,
    TxSigner,
    migrate_position_msg,
    rebalance_msg,
)
from monitoring.metrics import (
    TX_BROADCAST_FAILURE,
    TX_BROADCAST_SUCCESS,
    TX_CHAIN_FAILURE,
    TX_DRY_RUN,
    TX_SIGNING_FAILURE,
    MetricsRecorder,
)
from schemas.positions import RebalanceVerdict
from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.dispatch")

MEMO_SEPARATOR = ";"

STATUS_SUCCESS = "success"
STATUS_SIGNING_FAILED = "signing_failed"
STATUS_BROADCAST_FAILED = "broadcast_failed"
STATUS_CHAIN_REJECTED = "chain_rejected"
STATUS_DRY_RUN = "dry_run"


@dataclass(slots=True)
class BatchOutcome:
    sequence: int
    position_ids: List[int]
    status: str
    txhash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "sequence": self.sequence,
            "position_ids": list(self.position_ids),
            "status": self.status,
            "txhash": self.txhash,
            "error": self.error,
        }


@dataclass(slots=True)
class DispatchReport:
    outcomes: List[BatchOutcome] = field(default_factory=list)

    @property
    def batches(self) -> int:
        return len(self.outcomes)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


def chunk(verdicts: Sequence[RebalanceVerdict], size: int) -> List[List[RebalanceVerdict]]:
    """Split into consecutive batches of at most ``size``, keeping input order."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return [list(verdicts[i:i + size]) for i in range(0, len(verdicts), size)]


def build_memo(batch: Sequence[RebalanceVerdict]) -> str:
    return MEMO_SEPARATOR.join(v.memo_entry for v in batch)


class BatchDispatcher:
    def __init__(
        self,
        *,
        signer: TxSigner,
        broadcaster: Optional[TxBroadcaster],
        sequence: SequenceCounter,
        metrics: MetricsRecorder,
        sender: str,
        position_manager: str,
        batch_size: int,
        dry_run: bool = False,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch size must be >= 1, got {batch_size}")
        if broadcaster is None and not dry_run:
            raise ValueError("a broadcaster is required unless running dry")
        self._signer = signer
        self._broadcaster = broadcaster
        self._sequence = sequence
        self._metrics = metrics
        self._sender = sender
        self._position_manager = position_manager
        self._batch_size = batch_size
        self._dry_run = dry_run

    def prepare(self, verdict: RebalanceVerdict) -> RebalanceVerdict:
        """Attach the ledger messages: contract sync first, then the rebalance."""
        messages: List[ExecuteContractMsg] = [
            migrate_position_msg(
                sender=self._sender,
                position_manager=self._position_manager,
                position_contract=verdict.contract_addr,
            ),
            rebalance_msg(sender=self._sender, position_contract=verdict.contract_addr),
        ]
        return replace(verdict, messages=tuple(messages))

    async def dispatch(self, verdicts: Sequence[RebalanceVerdict]) -> DispatchReport:
        report = DispatchReport()
        actionable = [self.prepare(v) for v in verdicts if v.should_rebalance]
        for batch in chunk(actionable, self._batch_size):
            report.outcomes.append(await self._submit(batch))
        LOG.info(
            "dispatch finished: batches=%d success=%d signing_failed=%d broadcast_failed=%d chain_rejected=%d dry_run=%d",
            report.batches,
            report.count(STATUS_SUCCESS),
            report.count(STATUS_SIGNING_FAILED),
            report.count(STATUS_BROADCAST_FAILED),
            report.count(STATUS_CHAIN_REJECTED),
            report.count(STATUS_DRY_RUN),
        )
        return report

    async def _submit(self, batch: List[RebalanceVerdict]) -> BatchOutcome:
        messages = [msg for verdict in batch for msg in verdict.messages]
        memo = build_memo(batch)
        position_ids = [v.position_id for v in batch]
        sequence = self._sequence.take()

        try:
            tx = self._signer.sign(messages, memo, sequence)
        except Exception as exc:
            LOG.error("signing failed for sequence %d (positions %s): %r", sequence, position_ids, exc)
            self._metrics.plus_one(TX_SIGNING_FAILURE)
            return BatchOutcome(sequence, position_ids, STATUS_SIGNING_FAILED, error=repr(exc))

        if self._dry_run or self._broadcaster is None:
            LOG.info("[dry-run] sequence=%d memo=%s messages=%d", sequence, memo, len(messages))
            self._metrics.plus_one(TX_DRY_RUN)
            return BatchOutcome(sequence, position_ids, STATUS_DRY_RUN)

        try:
            result = await self._broadcaster.broadcast(tx)
        except Exception as exc:
            LOG.error("broadcast failed for sequence %d (positions %s): %r", sequence, position_ids, exc)
            self._metrics.plus_one(TX_BROADCAST_FAILURE)
            return BatchOutcome(sequence, position_ids, STATUS_BROADCAST_FAILED, error=repr(exc))

        if result.is_error:
            LOG.error(
                "rebalance tx rejected. sequence: %d, code: %d, codespace: %s, raw_log: %s",
                sequence,
                result.code,
                result.codespace,
                result.raw_log,
            )
            self._metrics.plus_one(TX_CHAIN_FAILURE)
            return BatchOutcome(sequence, position_ids, STATUS_CHAIN_REJECTED, txhash=result.txhash, error=result.raw_log)

        LOG.info("rebalance tx accepted. sequence: %d, txhash: %s, positions: %s", sequence, result.txhash, position_ids)
        self._metrics.plus_one(TX_BROADCAST_SUCCESS)
        return BatchOutcome(sequence, position_ids, STATUS_SUCCESS, txhash=result.txhash)
