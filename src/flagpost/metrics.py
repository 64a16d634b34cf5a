"""In-process decision metrics and the opt-in Prometheus counters."""

from __future__ import annotations
import os
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict

from prometheus_client import Counter as PromCounter

from .schema import ModerationResult

# Prometheus metrics (opt-in via env)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    flagpost_requests_total = PromCounter(
        "flagpost_requests_total", "Total moderation requests processed", ["endpoint"]
    )
    flagpost_decisions_total = PromCounter(
        "flagpost_decisions_total", "Total decisions made", ["label", "platform"]
    )
    flagpost_flags_total = PromCounter(
        "flagpost_flags_total", "Total flags raised", ["source", "category"]
    )
    flagpost_provider_errors_total = PromCounter(
        "flagpost_provider_errors_total", "Provider calls that failed", ["provider"]
    )


def count_request(endpoint: str):
    if PROMETHEUS_ENABLED:
        flagpost_requests_total.labels(endpoint=endpoint).inc()


def count_provider_error(provider: str):
    if PROMETHEUS_ENABLED:
        flagpost_provider_errors_total.labels(provider=provider).inc()


@dataclass
class Metrics:
    """Tracks decision counts for one engine instance."""

    total_requests: int = 0
    labels: Counter = field(default_factory=Counter)
    platforms: Counter = field(default_factory=Counter)
    categories: Counter = field(default_factory=Counter)
    failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, result: ModerationResult, failed: bool = False):
        """Records a decision, updating the counters."""
        with self._lock:
            self.total_requests += 1
            self.labels[result.label] += 1
            self.platforms[result.platform] += 1
            for flag in result.flags:
                self.categories[flag.category] += 1
            if failed:
                self.failures += 1
        if PROMETHEUS_ENABLED:
            flagpost_decisions_total.labels(
                label=result.label, platform=result.platform
            ).inc()
            for flag in result.flags:
                flagpost_flags_total.labels(
                    source=flag.source, category=flag.category
                ).inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        with self._lock:
            return {
                "total": self.total_requests,
                "labels": dict(self.labels),
                "block_rate": self.labels["block"] / max(1, self.total_requests),
                "platforms": dict(self.platforms),
                "top_categories": dict(self.categories.most_common(5)),
                "failures": self.failures,
            }
