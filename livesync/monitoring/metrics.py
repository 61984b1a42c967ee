import time
from typing import Dict, Any, List
from dataclasses import dataclass, field

@dataclass
class MetricSeries:
    count: int = 0
    total: float = 0.0
    last: float = 0.0
    maximum: float = 0.0

    def add(self, value: float):
        self.count += 1
        self.total += value
        self.last = value
        self.maximum = max(self.maximum, value)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

@dataclass
class ErrorRecord:
    name: str
    message: str
    timestamp: float = field(default_factory=time.time)

class MetricsTracker:
    """In-memory counters and timings for the live-sync server"""

    def __init__(self, max_errors: int = 100):
        self.metrics: Dict[str, MetricSeries] = {}
        self.counters: Dict[str, int] = {}
        self.errors: List[ErrorRecord] = []
        self.max_errors = max_errors

    @staticmethod
    def time() -> float:
        """Monotonic clock used for durations"""
        return time.perf_counter()

    def record(self, name: str, value: float):
        """Record one sample of a numeric metric"""
        series = self.metrics.setdefault(name, MetricSeries())
        series.add(float(value))

    def increment(self, name: str, amount: int = 1):
        """Bump a counter"""
        self.counters[name] = self.counters.get(name, 0) + amount

    def record_error(self, name: str, message: str):
        """Keep the most recent errors"""
        self.errors.append(ErrorRecord(name=name, message=message))
        if len(self.errors) > self.max_errors:
            self.errors.pop(0)
        self.increment(f"{name}.count")

    def summary(self) -> Dict[str, Any]:
        return {
            'metrics': {
                name: {
                    'count': series.count,
                    'mean': series.mean,
                    'last': series.last,
                    'max': series.maximum
                }
                for name, series in self.metrics.items()
            },
            'counters': dict(self.counters),
            'errors': [
                {'name': e.name, 'message': e.message, 'timestamp': e.timestamp}
                for e in self.errors
            ]
        }
