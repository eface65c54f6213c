import math
import threading
from collections import defaultdict
from typing import Dict, Tuple


# upper bounds in ms, ascending, last one is +Inf
LATENCY_BUCKETS_MS: Tuple[float, ...] = (100.0, 500.0, math.inf)


def _bucket_label(bound: float) -> str:
    if math.isinf(bound):
        return "+Inf"
    return str(int(bound)) if bound.is_integer() else str(bound)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class MetricsRecorder:
    """Process-lifetime counters and a cumulative latency histogram.

    One instance lives on ``app.state.metrics``; every mutation and the render
    snapshot go through the same lock since handlers run on a thread pool.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # (path, status) -> count
        self._http_requests_total: Dict[Tuple[str, str], int] = defaultdict(int)
        # result -> count (for webhook)
        self._webhook_requests_total: Dict[str, int] = defaultdict(int)
        self._latency_buckets: Dict[float, int] = {b: 0 for b in LATENCY_BUCKETS_MS}
        self._latency_count = 0
        self._latency_sum = 0.0

    def inc_http_request(self, path: str, status: int) -> None:
        key = (path, str(status))
        with self._lock:
            self._http_requests_total[key] += 1

    def inc_webhook_result(self, result: str) -> None:
        with self._lock:
            self._webhook_requests_total[result] += 1

    def observe_latency_ms(self, latency_ms: float) -> None:
        with self._lock:
            self._latency_count += 1
            self._latency_sum += latency_ms
            for bound in LATENCY_BUCKETS_MS:
                if latency_ms <= bound:
                    self._latency_buckets[bound] += 1

    def http_requests(self, path: str, status: int) -> int:
        with self._lock:
            return self._http_requests_total.get((path, str(status)), 0)

    def webhook_results(self, result: str) -> int:
        with self._lock:
            return self._webhook_requests_total.get(result, 0)

    def bucket_counts(self) -> Dict[str, int]:
        with self._lock:
            return {_bucket_label(b): self._latency_buckets[b] for b in LATENCY_BUCKETS_MS}

    @property
    def latency_count(self) -> int:
        with self._lock:
            return self._latency_count

    def render(self) -> str:
        """Return plain text metrics."""
        with self._lock:
            http_requests = sorted(self._http_requests_total.items())
            webhook_requests = sorted(self._webhook_requests_total.items())
            buckets = [(b, self._latency_buckets[b]) for b in LATENCY_BUCKETS_MS]
            count = self._latency_count
            total = self._latency_sum

        lines: list[str] = []

        for (path, status), value in http_requests:
            lines.append(
                f'http_requests_total{{path="{_escape_label(path)}",status="{status}"}} {value}'
            )

        for result, value in webhook_requests:
            lines.append(
                f'webhook_requests_total{{result="{_escape_label(result)}"}} {value}'
            )

        for bound, value in buckets:
            lines.append(
                f'request_latency_ms_bucket{{le="{_bucket_label(bound)}"}} {value}'
            )
        lines.append(f"request_latency_ms_count {count}")
        lines.append(f"request_latency_ms_sum {round(total, 3)}")

        return "\n".join(lines) + "\n"
