from __future__ import annotations

import asyncio

import pytest
from prometheus_client import generate_latest

from conftest import RecordingSink
from monitoring.metrics import (
    COUNTER_SCHEMA,
    GET_POSITION_INFO_FAILURE,
    TOTAL_POSITION_COVERED,
    MetricsRecorder,
)
from monitoring.observability import LoggingMetricsSink, PushgatewayMetricsSink, build_sink, prometheus_name


def test_flush_reports_every_counter_even_when_untouched(sink: RecordingSink):
    recorder = MetricsRecorder()
    recorder.plus_n(TOTAL_POSITION_COVERED, 5)

    assert recorder.flush(sink, dimension="testnet") is True

    (published, dimension), = sink.published
    assert dimension == "testnet"
    assert set(published) == set(COUNTER_SCHEMA)
    assert published[TOTAL_POSITION_COVERED] == 5
    assert all(v == 0 for k, v in published.items() if k != TOTAL_POSITION_COVERED)


def test_flush_publishes_only_once(sink: RecordingSink):
    recorder = MetricsRecorder()
    assert recorder.flush(sink, dimension="mainnet") is True
    assert recorder.flush(sink, dimension="mainnet") is False
    assert len(sink.published) == 1
    assert recorder.flushed


def test_sink_failure_is_swallowed():
    recorder = MetricsRecorder()
    failing = RecordingSink(error=ConnectionError("gateway down"))
    assert recorder.flush(failing, dimension="mainnet") is False
    assert len(failing.published) == 1


def test_flush_without_sink_logs_only():
    recorder = MetricsRecorder()
    assert recorder.flush(None, dimension="testnet") is True


def test_unknown_counter_is_rejected():
    recorder = MetricsRecorder()
    with pytest.raises(KeyError):
        recorder.plus_one("NOT_A_COUNTER")


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost():
    recorder = MetricsRecorder()

    async def bump() -> None:
        for _ in range(50):
            recorder.plus_one(GET_POSITION_INFO_FAILURE)
            await asyncio.sleep(0)

    await asyncio.gather(*(bump() for _ in range(10)))
    assert recorder.get(GET_POSITION_INFO_FAILURE) == 500


def test_pushgateway_sink_pushes_gauges_grouped_by_network():
    pushed = {}

    def fake_push(url, *, job, registry, grouping_key, timeout):
        pushed.update(url=url, job=job, registry=registry, grouping_key=grouping_key, timeout=timeout)

    sink = PushgatewayMetricsSink("http://pushgateway:9091", push=fake_push, timeout=3)
    sink.publish({"TX_BROADCAST_SUCCESS": 2, "NO_ACTION": 0}, dimension="testnet")

    assert pushed["url"] == "http://pushgateway:9091"
    assert pushed["job"] == "aperture_controller"
    assert pushed["grouping_key"] == {"network": "testnet"}
    assert pushed["timeout"] == 3.0
    exposition = generate_latest(pushed["registry"]).decode()
    assert 'aperture_controller_tx_broadcast_success{network="testnet"} 2.0' in exposition
    assert 'aperture_controller_no_action{network="testnet"} 0.0' in exposition


def test_prometheus_name_is_lower_snake_case():
    assert prometheus_name("REBALANCE_CRL") == "aperture_controller_rebalance_crl"


def test_build_sink_falls_back_to_logging():
    assert isinstance(build_sink(None), LoggingMetricsSink)
    assert isinstance(build_sink("http://gw:9091"), PushgatewayMetricsSink)
    with pytest.raises(ValueError):
        PushgatewayMetricsSink("")
