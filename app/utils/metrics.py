"""
Metrics Collection for the messaging service.

In-process counters and timers, surfaced on the health endpoint.
"""

import time
from typing import Any, Callable, Dict
from collections import defaultdict
from datetime import datetime
from functools import wraps
import threading


class MetricsCollector:
    """Thread-safe counters and cumulative timers."""

    COUNTERS = (
        "messages_sent_total",
        "messages_read_total",
        "messages_deleted_total",
        "realtime_connections_total",
        "realtime_auth_failures_total",
        "realtime_events_total",
        "realtime_event_errors_total",
        "reconciliation_conversations_created_total",
        "reconciliation_pointers_backfilled_total",
        "reconciliation_failures_total",
    )

    def __init__(self):
        self.metrics = defaultdict(int)
        self.timers = defaultdict(float)
        self.lock = threading.Lock()
        for name in self.COUNTERS:
            self.metrics[name] = 0

    def increment_counter(self, metric_name: str, value: int = 1):
        with self.lock:
            self.metrics[metric_name] += value

    def record_timer(self, metric_name: str, duration: float):
        with self.lock:
            self.timers[metric_name] += duration

    def get_metrics(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "counters": dict(self.metrics),
                "timers": dict(self.timers),
                "timestamp": datetime.utcnow().isoformat()
            }

    def time_operation(self, metric_name: str) -> Callable:
        """Decorator recording the wall time of each call, failed calls included."""
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    return func(*args, **kwargs)
                finally:
                    self.record_timer(metric_name, time.time() - start_time)
            return wrapper
        return decorator


# Global metrics instance
metrics_collector = MetricsCollector()
