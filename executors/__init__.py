from .base import (
    BroadcastError,
    BroadcastResult,
    ExecuteContractMsg,
    SequenceCounter,
    SignedTx,
    SigningError,
    TxBroadcaster,
    TxSigner,
)
from .lcd_broadcaster import LCDBroadcaster
from .simulated import DryRunSigner, SimulatedBroadcaster

__all__ = [
    "BroadcastError",
    "BroadcastResult",
    "ExecuteContractMsg",
    "SequenceCounter",
    "SignedTx",
    "SigningError",
    "TxBroadcaster",
    "TxSigner",
    "LCDBroadcaster",
    "DryRunSigner",
    "SimulatedBroadcaster",
]
