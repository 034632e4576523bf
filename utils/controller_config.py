from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional


class ConfigError(ValueError):
    """Raised when the controller configuration is incomplete or invalid."""


# ──────────────────────────────────────────────────────────────────────────────
# Network presets
# ──────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class NetworkPreset:
    name: str
    lcd_url: str
    chain_id: str
    terra_manager_addr: str


NETWORKS: Dict[str, NetworkPreset] = {
    "mainnet": NetworkPreset(
        name="mainnet",
        lcd_url="https://lcd.terra.dev",
        chain_id="columbus-5",
        terra_manager_addr="terra1ajkmy2c0g84seh66apv9x6xt6kd3ag80jmcvtz",
    ),
    "testnet": NetworkPreset(
        name="testnet",
        lcd_url="https://bombay-lcd.terra.dev",
        chain_id="bombay-12",
        terra_manager_addr="terra1pzmq3sacc2z3pk8el3rk0q584qtuuhnv4fwp8n",
    ),
}

DEFAULT_CONCURRENCY = 10
DEFAULT_BATCH_SIZE = 10
DELTA_NEUTRAL_STRATEGY_ID = "0"
TERRA_CHAIN_ID = 3


# ──────────────────────────────────────────────────────────────────────────────
# helpers: env parsing
# ──────────────────────────────────────────────────────────────────────────────
def _env(name: str) -> Optional[str]:
    raw = os.getenv(f"CONTROLLER_{name}")
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _env_bool(name: str, default: bool) -> bool:
    val = _env(name)
    if val is None:
        return default
    return val.lower() not in {"0", "false", "off", "no"}


def _as_decimal(name: str, value: Any) -> Decimal:
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if not dec.is_finite() or dec < 0:
        raise ConfigError(f"{name} must be a finite non-negative number, got {value!r}")
    return dec


def _as_int(name: str, value: Any, *, minimum: int) -> int:
    try:
        num = int(str(value))
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if num < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {num}")
    return num


def _as_float(name: str, value: Any, *, minimum: float) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if num < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {num}")
    return num


def parse_tracked_assets(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``"addr:label,addr2:label2"``; a bare address is its own label."""
    assets: Dict[str, str] = {}
    if not raw:
        return assets
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        addr, _, label = chunk.partition(":")
        addr = addr.strip()
        if not addr:
            raise ConfigError(f"tracked asset entry {chunk!r} has no address")
        assets[addr] = label.strip() or addr
    return assets


# ──────────────────────────────────────────────────────────────────────────────
# Controller configuration
# ──────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ControllerConfig:
    """Everything one controller run needs.

    Tolerances are kept as ``Decimal`` so the policy never touches binary floats.
    """

    network: str
    delta_tolerance: Decimal
    balance_tolerance: Decimal
    time_tolerance: int
    concurrency: int = DEFAULT_CONCURRENCY
    batch_size: int = DEFAULT_BATCH_SIZE

    lcd_url: str = ""
    chain_id: str = ""
    terra_manager_addr: str = ""
    strategy_id: str = DELTA_NEUTRAL_STRATEGY_ID
    terra_chain_id: int = TERRA_CHAIN_ID
    mirror_oracle_addr: Optional[str] = None
    tracked_assets: Dict[str, str] = field(default_factory=dict)
    controller_addr: str = ""
    signer: Optional[str] = None

    pushgateway_url: Optional[str] = None
    http_timeout_sec: float = 20.0
    query_retries: int = 3
    query_retry_delay_sec: float = 1.0
    dry_run: bool = False

    @classmethod
    def from_env(cls, **overrides: Any) -> "ControllerConfig":
        """Build a config from ``CONTROLLER_*`` variables; explicit overrides win."""

        def pick(key: str, env_name: str) -> Any:
            value = overrides.get(key)
            if value is not None:
                return value
            return _env(env_name)

        network = pick("network", "NETWORK")
        if network not in NETWORKS:
            raise ConfigError(f"network must be one of {sorted(NETWORKS)}, got {network!r}")
        preset = NETWORKS[network]

        missing = [
            name
            for name, env_name in (
                ("delta_tolerance", "DELTA_TOLERANCE"),
                ("balance_tolerance", "BALANCE_TOLERANCE"),
                ("time_tolerance", "TIME_TOLERANCE"),
            )
            if pick(name, env_name) is None
        ]
        if missing:
            raise ConfigError(f"missing required settings: {', '.join(missing)}")

        concurrency = pick("concurrency", "CONCURRENCY")
        batch_size = pick("batch_size", "BATCH_SIZE")
        retries = pick("query_retries", "QUERY_RETRIES")
        retry_delay = pick("query_retry_delay_sec", "QUERY_RETRY_DELAY_SEC")
        timeout = pick("http_timeout_sec", "HTTP_TIMEOUT_SEC")
        tracked = overrides.get("tracked_assets")
        if tracked is None:
            tracked = parse_tracked_assets(_env("TRACKED_ASSETS"))
        dry_run = overrides.get("dry_run")
        if dry_run is None:
            dry_run = _env_bool("DRY_RUN", False)

        return cls(
            network=network,
            delta_tolerance=_as_decimal("delta_tolerance", pick("delta_tolerance", "DELTA_TOLERANCE")),
            balance_tolerance=_as_decimal("balance_tolerance", pick("balance_tolerance", "BALANCE_TOLERANCE")),
            time_tolerance=_as_int("time_tolerance", pick("time_tolerance", "TIME_TOLERANCE"), minimum=0),
            concurrency=_as_int("concurrency", concurrency, minimum=1) if concurrency is not None else DEFAULT_CONCURRENCY,
            batch_size=_as_int("batch_size", batch_size, minimum=1) if batch_size is not None else DEFAULT_BATCH_SIZE,
            lcd_url=str(pick("lcd_url", "LCD_URL") or preset.lcd_url).rstrip("/"),
            chain_id=str(pick("chain_id", "CHAIN_ID") or preset.chain_id),
            terra_manager_addr=str(pick("terra_manager_addr", "TERRA_MANAGER_ADDR") or preset.terra_manager_addr),
            strategy_id=str(pick("strategy_id", "STRATEGY_ID") or DELTA_NEUTRAL_STRATEGY_ID),
            terra_chain_id=_as_int("terra_chain_id", pick("terra_chain_id", "TERRA_CHAIN_ID") or TERRA_CHAIN_ID, minimum=0),
            mirror_oracle_addr=pick("mirror_oracle_addr", "MIRROR_ORACLE_ADDR"),
            tracked_assets=dict(tracked),
            controller_addr=str(pick("controller_addr", "ADDRESS") or ""),
            signer=pick("signer", "SIGNER"),
            pushgateway_url=pick("pushgateway_url", "PUSHGATEWAY_URL"),
            http_timeout_sec=_as_float("http_timeout_sec", timeout, minimum=1.0) if timeout is not None else 20.0,
            query_retries=_as_int("query_retries", retries, minimum=0) if retries is not None else 3,
            query_retry_delay_sec=_as_float("query_retry_delay_sec", retry_delay, minimum=0.0) if retry_delay is not None else 1.0,
            dry_run=bool(dry_run),
        )

    def with_overrides(self, **changes: Any) -> "ControllerConfig":
        return replace(self, **changes)

    def to_public_dict(self) -> Mapping[str, Any]:
        return {
            "network": self.network,
            "delta_tolerance": str(self.delta_tolerance),
            "balance_tolerance": str(self.balance_tolerance),
            "time_tolerance": self.time_tolerance,
            "concurrency": self.concurrency,
            "batch_size": self.batch_size,
            "lcd_url": self.lcd_url,
            "chain_id": self.chain_id,
            "terra_manager_addr": self.terra_manager_addr,
            "strategy_id": self.strategy_id,
            "mirror_oracle_addr": self.mirror_oracle_addr,
            "tracked_assets": len(self.tracked_assets),
            "controller_addr": self.controller_addr,
            "signer": self.signer,
            "pushgateway_url": self.pushgateway_url,
            "query_retries": self.query_retries,
            "dry_run": self.dry_run,
        }
