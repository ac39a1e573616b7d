"""
Prometheus metrics collection service
Provides counters and timing summaries for task outcomes and quota usage
"""
from typing import Deque, Dict, Optional, Tuple
from collections import defaultdict, deque
from threading import Lock
import logging

logger = logging.getLogger(__name__)

# Summaries keep only the most recent samples
MAX_SAMPLES = 1000

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _render(name: str, key: LabelKey) -> str:
    if not key:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in key)
    return f"{name}{{{label_str}}}"


class MetricsCollector:
    """
    Thread-safe metrics collector for Prometheus format
    Series live in memory and are lost on restart
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._timings: Dict[str, Dict[LabelKey, Deque[float]]] = defaultdict(dict)

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
        """
        Increment a counter metric

        Args:
            name: Metric name (e.g., "generation_tasks_total")
            value: Increment value (default: 1.0)
            labels: Optional labels dict (e.g., {"category": "image", "state": "succeeded"})
        """
        with self._lock:
            self._counters[name][_label_key(labels)] += value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a timing sample"""
        key = _label_key(labels)
        with self._lock:
            series = self._timings[name]
            if key not in series:
                series[key] = deque(maxlen=MAX_SAMPLES)
            series[key].append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get count/sum/max for a recorded timing"""
        with self._lock:
            values = list(self._timings.get(name, {}).get(_label_key(labels), ()))

        return {
            "count": len(values),
            "sum": sum(values),
            "max": max(values) if values else 0.0,
        }

    def reset(self):
        """Drop all recorded values"""
        with self._lock:
            self._counters.clear()
            self._timings.clear()

    def format_prometheus(self) -> str:
        """
        Format metrics in Prometheus text format

        Counters render as `name{labels} value`; timings render as `_count`
        and `_sum` summary series.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        with self._lock:
            for name, series in sorted(self._counters.items()):
                for key, value in sorted(series.items()):
                    lines.append(f"{_render(name, key)} {value}")

            for name, series in sorted(self._timings.items()):
                for key, values in sorted(series.items()):
                    if values:
                        lines.append(f"{_render(name + '_count', key)} {len(values)}")
                        lines.append(f"{_render(name + '_sum', key)} {sum(values)}")

        return "\n".join(lines) + "\n"


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def increment_counter(name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
    get_metrics_collector().increment_counter(name, value, labels)


def record_histogram(name: str, value: float, labels: Optional[Dict[str, str]] = None):
    get_metrics_collector().record_histogram(name, value, labels)
