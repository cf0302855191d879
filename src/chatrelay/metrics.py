"""Exchange metrics: a JSONL audit log plus Prometheus text exposition.

Every finished exchange appends one line to ``requests-YYYYMMDD.jsonl`` in the
metrics directory and updates the in-process counters rendered by
``MetricsLogger.render_prometheus`` (served on ``/metrics``).
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class _PromMetrics:
    __slots__ = ("_lock", "_counter", "_cost", "_histogram")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._cost: defaultdict[tuple[str, str], float] = defaultdict(float)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, payload: dict[str, Any]) -> None:
        provider = str(payload.get("provider") or "unknown")
        model = str(payload.get("model") or "unknown")
        outcome = str(payload.get("outcome") or "unknown")
        cost = payload.get("cost")
        latency_seconds = max(float(payload.get("latency_ms") or 0.0) / 1000.0, 0.0)

        with self._lock:
            self._counter[(provider, model, outcome)] += 1
            if isinstance(cost, (int, float)) and not isinstance(cost, bool):
                self._cost[(provider, model)] += float(cost)
            hist_state = self._histogram[(provider, outcome)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds

    def render(self) -> str:
        with self._lock:
            lines: list[str] = [
                "# HELP chatrelay_exchanges_total Finished exchanges by terminal outcome",
                "# TYPE chatrelay_exchanges_total counter",
            ]
            for (provider, model, outcome), value in sorted(self._counter.items()):
                lines.append(
                    f'chatrelay_exchanges_total{{provider="{provider}",model="{model}",outcome="{outcome}"}} {value}'
                )
            lines.append("# HELP chatrelay_exchange_cost_total Billed cost of exchanges in dollars")
            lines.append("# TYPE chatrelay_exchange_cost_total counter")
            for (provider, model), value in sorted(self._cost.items()):
                lines.append(
                    f'chatrelay_exchange_cost_total{{provider="{provider}",model="{model}"}} {value:.8f}'
                )
            lines.append("# HELP chatrelay_exchange_latency_seconds Wall time from dispatch to finalize")
            lines.append("# TYPE chatrelay_exchange_latency_seconds histogram")
            for (provider, outcome), state in sorted(self._histogram.items()):
                buckets = state["buckets"]
                for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                    le_value = format(bound, ".6g")
                    lines.append(
                        f'chatrelay_exchange_latency_seconds_bucket{{provider="{provider}",outcome="{outcome}",le="{le_value}"}} {buckets[idx]}'
                    )
                lines.append(
                    f'chatrelay_exchange_latency_seconds_bucket{{provider="{provider}",outcome="{outcome}",le="+Inf"}} {buckets[-1]}'
                )
                lines.append(
                    f'chatrelay_exchange_latency_seconds_count{{provider="{provider}",outcome="{outcome}"}} {state["count"]}'
                )
                lines.append(
                    f'chatrelay_exchange_latency_seconds_sum{{provider="{provider}",outcome="{outcome}"}} {state["sum"]}'
                )
        return "\n".join(lines) + "\n"


class MetricsLogger:
    def __init__(self, dirpath: str | None):
        self.dir = dirpath
        if self.dir:
            os.makedirs(self.dir, exist_ok=True)
        self._lock: asyncio.Lock | None = None
        self._prom = _PromMetrics()

    def _file(self, dirpath: str) -> str:
        return os.path.join(dirpath, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self.dir:
            if self._lock is None:
                self._lock = asyncio.Lock()
            async with self._lock:
                with open(self._file(self.dir), "a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)

    def render_prometheus(self) -> bytes:
        return self._prom.render().encode("utf-8")
