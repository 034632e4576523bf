# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timezone
import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from executors.base import SigningError
from executors.simulated import DryRunSigner
from monitoring.metrics import MetricsRecorder
from utils.retry import RetryPolicy

MANAGER = "terra1manager"
POSITION_MANAGER = "terra1dnmanager"
ORACLE = "terra1oracle"
MAAPL = "terra1maapl"
MTSLA = "terra1mtsla"
CONTROLLER = "terra1controller"

NOW = datetime(2022, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


async def _no_sleep(_: float) -> None:
    return None


def position_item(
    position_id: int,
    *,
    asset: str = MAAPL,
    closed: bool = False,
    collateral_ratio: str = "2.5",
    cr_min: str = "2.3",
    cr_max: str = "2.7",
    short: str = "100",
    long: str = "100",
    uusd_balance: str = "10",
    uusd_value: str = "1000",
    unclaimed: str = "0",
    claimable: str = "0",
    mir_reward: str = "0",
    spec_reward: str = "0",
) -> Dict[str, Any]:
    """One ``batch_get_position_info`` item as the position manager returns it."""
    info: Dict[str, Any] = {"mirror_asset_cw20_addr": asset}
    if not closed:
        info["detailed_info"] = {
            "collateral_ratio": collateral_ratio,
            "target_collateral_ratio_range": {"min": cr_min, "max": cr_max},
            "state": {
                "uusd_balance": uusd_balance,
                "mirror_asset_short_amount": short,
                "mirror_asset_long_amount": long,
            },
            "uusd_value": uusd_value,
            "unclaimed_short_proceeds_uusd_amount": unclaimed,
            "claimable_short_proceeds_uusd_amount": claimable,
            "claimable_mir_reward_uusd_value": mir_reward,
            "claimable_spec_reward_uusd_value": spec_reward,
        }
    return {
        "position": {"chain_id": 3, "position_id": str(position_id)},
        "contract": f"terra1position{position_id}",
        "holder": "terra1holder",
        "info": info,
    }


def oracle_price(updated: datetime = NOW, rate: str = "160.5") -> Dict[str, Any]:
    ts = int(updated.timestamp())
    return {"rate": rate, "last_updated_base": ts, "last_updated_quote": ts}


class FakeQuerier:
    """Scripted on-chain querier keyed by contract and top-level query name.

    A handler may be a value, an exception instance (raised) or a callable
    taking the query body; coroutine results are awaited.
    """

    def __init__(self) -> None:
        self.handlers: Dict[Tuple[str, str], Any] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.sequence: Optional[int] = 7
        self.closed = False

    def on(self, contract: str, query: str, handler: Any) -> "FakeQuerier":
        self.handlers[(contract, query)] = handler
        return self

    async def query(self, contract: str, payload: dict) -> Any:
        self.calls.append((contract, payload))
        name = next(iter(payload))
        handler = self.handlers.get((contract, name))
        if handler is None:
            raise AssertionError(f"No handler registered for {(contract, name)}")
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            result = handler(payload[name])
            if inspect.isawaitable(result):
                result = await result
            return result
        return handler

    async def account_sequence(self, address: str) -> int:
        if self.sequence is None:
            raise RuntimeError(f"account {address} not found")
        return self.sequence

    async def aclose(self) -> None:
        self.closed = True

    def count(self, query: str) -> int:
        return sum(1 for _, payload in self.calls if next(iter(payload)) == query)


def standard_chain(
    items: Dict[int, Dict[str, Any]],
    *,
    prices: Optional[Dict[str, Any]] = None,
) -> FakeQuerier:
    """Registry, position manager and oracle wired up for ``items``."""
    querier = FakeQuerier()
    querier.on(MANAGER, "get_next_position_id", {"next_position_id": len(items)})
    querier.on(MANAGER, "get_strategy_metadata", {"name": "delta-neutral", "manager_addr": POSITION_MANAGER})
    querier.on(POSITION_MANAGER, "get_context", {"controller": CONTROLLER, "mirror_oracle_addr": ORACLE})

    def _position(body: Dict[str, Any]) -> Any:
        pid = int(body["positions"][0]["position_id"])
        item = items[pid]
        if isinstance(item, BaseException):
            raise item
        return {"items": [item]}

    querier.on(POSITION_MANAGER, "batch_get_position_info", _position)

    price_table = prices if prices is not None else {MAAPL: oracle_price(), MTSLA: oracle_price()}

    def _price(body: Dict[str, Any]) -> Any:
        value = price_table[body["base_asset"]]
        if isinstance(value, BaseException):
            raise value
        return value

    querier.on(ORACLE, "price", _price)
    return querier


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(retries=3, delay=1.0, sleep=_no_sleep)


@pytest.fixture
def metrics() -> MetricsRecorder:
    return MetricsRecorder()


class RecordingSink:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.published: List[Tuple[Dict[str, int], str]] = []
        self._error = error

    def publish(self, metrics, *, dimension: str) -> None:
        self.published.append((dict(metrics), dimension))
        if self._error is not None:
            raise self._error


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: NOW


class FailingSigner(DryRunSigner):
    """Dry-run signer that refuses the given sequence numbers."""

    def __init__(self, fail_sequences: Iterable[int], *, chain_id: str = "") -> None:
        super().__init__(chain_id=chain_id)
        self._fail = set(fail_sequences)

    def sign(self, messages, memo: str, sequence: int):
        if sequence in self._fail:
            raise SigningError(f"refusing to sign sequence {sequence}")
        return super().sign(messages, memo, sequence)


def make_signer(config) -> DryRunSigner:
    """Signer factory in the ``CONTROLLER_SIGNER=module:factory`` shape."""
    return DryRunSigner(chain_id=config.chain_id)
