"""MetricsLogger JSONL and Prometheus exposition tests."""

import json

import pytest

from src.chatrelay.metrics import MetricsLogger


def _record(**overrides):
    record = {
        "session": "s1",
        "conversation": "conv-1",
        "provider": "openai",
        "model": "gpt-4o",
        "latency_ms": 1200,
        "outcome": "done",
        "ok": True,
        "cost": 0.0015,
    }
    record.update(overrides)
    return record


@pytest.mark.anyio
async def test_write_appends_jsonl_line(tmp_path) -> None:
    logger = MetricsLogger(str(tmp_path / "metrics"))

    await logger.write(_record())
    await logger.write(_record(outcome="canceled", cost=0.0002))

    (path,) = (tmp_path / "metrics").glob("requests-*.jsonl")
    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["outcome"] for line in lines] == ["done", "canceled"]
    assert lines[0]["cost"] == 0.0015


@pytest.mark.anyio
async def test_render_prometheus_counts_outcomes_cost_and_latency() -> None:
    logger = MetricsLogger(None)

    await logger.write(_record())
    await logger.write(_record(latency_ms=40_000, cost=0.0005))
    await logger.write(_record(outcome="error", cost=None, latency_ms=100))

    text = logger.render_prometheus().decode("utf-8")
    assert 'chatrelay_exchanges_total{provider="openai",model="gpt-4o",outcome="done"} 2' in text
    assert 'chatrelay_exchanges_total{provider="openai",model="gpt-4o",outcome="error"} 1' in text
    assert 'chatrelay_exchange_cost_total{provider="openai",model="gpt-4o"} 0.00200000' in text
    assert (
        'chatrelay_exchange_latency_seconds_bucket{provider="openai",outcome="done",le="2.5"} 1'
        in text
    )
    assert (
        'chatrelay_exchange_latency_seconds_bucket{provider="openai",outcome="done",le="+Inf"} 2'
        in text
    )
    assert 'chatrelay_exchange_latency_seconds_count{provider="openai",outcome="done"} 2' in text


@pytest.mark.anyio
async def test_missing_labels_fall_back_to_unknown() -> None:
    logger = MetricsLogger(None)

    await logger.write({"latency_ms": 5})

    text = logger.render_prometheus().decode("utf-8")
    assert 'chatrelay_exchanges_total{provider="unknown",model="unknown",outcome="unknown"} 1' in text
