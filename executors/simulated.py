from __future__ import annotations

import base64
import hashlib
import json
from typing import List, Optional, Sequence, Set

from executors.base import BroadcastError, BroadcastResult, ExecuteContractMsg, SignedTx


class DryRunSigner:
    """
    Deterministic stand-in for a wallet signer.

    Produces an unsigned transaction envelope so the dispatch path (batching,
    memo, sequence accounting) can run without key material. Dry runs fall back
    to it when no signer is configured.
    """

    def __init__(self, *, chain_id: str = "") -> None:
        self.chain_id = chain_id
        self.signed: List[SignedTx] = []

    def sign(self, messages: Sequence[ExecuteContractMsg], memo: str, sequence: int) -> SignedTx:
        body = {
            "chain_id": self.chain_id,
            "sequence": sequence,
            "memo": memo,
            "messages": [m.to_dict() for m in messages],
        }
        raw = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        tx = SignedTx(
            sequence=sequence,
            memo=memo,
            messages=tuple(messages),
            tx_bytes=base64.b64encode(raw).decode("ascii"),
        )
        self.signed.append(tx)
        return tx


class SimulatedBroadcaster:
    """In-memory broadcaster used for tests and dry-runs.

    ``reject_sequences`` yields a chain-level error (non-zero code) and
    ``error_sequences`` raises :class:`BroadcastError`, mirroring the two ways a
    real node can fail.
    """

    def __init__(
        self,
        *,
        reject_sequences: Optional[Set[int]] = None,
        error_sequences: Optional[Set[int]] = None,
    ) -> None:
        self._reject = set(reject_sequences or ())
        self._error = set(error_sequences or ())
        self.broadcasted: List[SignedTx] = []

    async def broadcast(self, tx: SignedTx) -> BroadcastResult:
        self.broadcasted.append(tx)
        txhash = hashlib.sha256(tx.tx_bytes.encode("ascii")).hexdigest().upper()
        if tx.sequence in self._error:
            raise BroadcastError(f"connection reset while broadcasting sequence {tx.sequence}")
        if tx.sequence in self._reject:
            return BroadcastResult(txhash=txhash, code=32, codespace="sdk", raw_log="account sequence mismatch")
        return BroadcastResult(txhash=txhash, code=0, height=len(self.broadcasted))
