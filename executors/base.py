from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Sequence

MSG_EXECUTE_CONTRACT_TYPE = "/terra.wasm.v1beta1.MsgExecuteContract"


class SigningError(RuntimeError):
    """The local signer refused or failed to produce a transaction."""


class BroadcastError(RuntimeError):
    """The transaction could not be delivered to the chain (network level)."""


@dataclass(frozen=True)
class ExecuteContractMsg:
    sender: str
    contract: str
    execute_msg: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "@type": MSG_EXECUTE_CONTRACT_TYPE,
            "sender": self.sender,
            "contract": self.contract,
            "execute_msg": self.execute_msg,
            "coins": [],
        }


def migrate_position_msg(*, sender: str, position_manager: str, position_contract: str) -> ExecuteContractMsg:
    """Bring the position contract up to the manager's current code id."""
    return ExecuteContractMsg(
        sender=sender,
        contract=position_manager,
        execute_msg={
            "migrate_position_contracts": {
                "positions": [],
                "position_contracts": [position_contract],
            }
        },
    )


def rebalance_msg(*, sender: str, position_contract: str) -> ExecuteContractMsg:
    return ExecuteContractMsg(
        sender=sender,
        contract=position_contract,
        execute_msg={"controller": {"rebalance_and_reinvest": {}}},
    )


@dataclass(frozen=True)
class SignedTx:
    sequence: int
    memo: str
    messages: Sequence[ExecuteContractMsg]
    tx_bytes: str  # base64 wire encoding


@dataclass(frozen=True)
class BroadcastResult:
    txhash: str
    code: int = 0
    codespace: str = ""
    raw_log: str = ""
    height: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        """Chain-level rejection (the node accepted the request but not the tx)."""
        return self.code != 0


class TxSigner(Protocol):
    def sign(self, messages: Sequence[ExecuteContractMsg], memo: str, sequence: int) -> SignedTx:
        ...


class TxBroadcaster(Protocol):
    async def broadcast(self, tx: SignedTx) -> BroadcastResult:
        ...


class SequenceCounter:
    """Account sequence shared between dispatcher and signer.

    ``take`` hands out the current value and advances unconditionally; a signed
    transaction consumes its slot whether or not it is later accepted.
    """

    def __init__(self, start: int) -> None:
        if start < 0:
            raise ValueError(f"sequence must be non-negative, got {start}")
        self._value = int(start)
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def take(self) -> int:
        with self._lock:
            current = self._value
            self._value += 1
            return current
