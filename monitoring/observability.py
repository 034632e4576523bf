"""Metric sinks: Prometheus Pushgateway export and a log-only fallback."""
from __future__ import annotations

from typing import Callable, Mapping, Optional

from prometheus_client import CollectorRegistry, Gauge, push_to_gateway

from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.observability")

PushFn = Callable[..., None]


def prometheus_name(counter: str, *, prefix: str = "aperture_controller") -> str:
    return f"{prefix}_{counter.lower()}"


class PushgatewayMetricsSink:
    """Push run counters to a Prometheus Pushgateway.

    A controller run is a batch job, so counters are exported as gauges holding
    the run's totals and grouped by ``network`` on the gateway.
    """

    def __init__(
        self,
        gateway_url: str,
        *,
        job: str = "aperture_controller",
        timeout: float = 10.0,
        push: Optional[PushFn] = None,
    ) -> None:
        if not gateway_url:
            raise ValueError("gateway_url must be provided")
        self._gateway_url = gateway_url
        self._job = job
        self._timeout = float(timeout)
        self._push = push or push_to_gateway

    def build_registry(self, metrics: Mapping[str, int], *, dimension: str) -> CollectorRegistry:
        registry = CollectorRegistry()
        for name, value in sorted(metrics.items()):
            gauge = Gauge(
                prometheus_name(name),
                f"Controller run counter {name}",
                labelnames=("network",),
                registry=registry,
            )
            gauge.labels(network=dimension).set(value)
        return registry

    def publish(self, metrics: Mapping[str, int], *, dimension: str) -> None:
        registry = self.build_registry(metrics, dimension=dimension)
        self._push(
            self._gateway_url,
            job=self._job,
            registry=registry,
            grouping_key={"network": dimension},
            timeout=self._timeout,
        )


class LoggingMetricsSink:
    """Write the metrics to the log when no gateway is configured."""

    def publish(self, metrics: Mapping[str, int], *, dimension: str) -> None:
        LOG.info("controller metrics", extra={"network": dimension, "metrics": dict(metrics)})


def build_sink(pushgateway_url: Optional[str]):
    if pushgateway_url:
        return PushgatewayMetricsSink(pushgateway_url)
    return LoggingMetricsSink()
