"""
In-process metrics with Prometheus-compatible text export.

Only the series declared below can be recorded; every counter is exported
from zero so dashboards see the full set before the first event.
"""

from __future__ import annotations

import time
from typing import Any

PREFIX = "taskdesk_"

COUNTERS: dict[str, str] = {
    "organization_fetches_total": "Organization list fetches started",
    "organization_fetch_errors_total": "Organization list fetches that failed",
    "organizations_created_total": "Organizations provisioned with an owner membership",
    "provisioning_failures_total": "Organization create attempts that did not succeed",
    "provisioning_compensations_total": "Orphaned organizations removed after a membership failure",
    "compensation_failures_total": "Orphaned organizations that could not be removed",
    "access_checks_total": "Membership access checks performed",
}

GAUGES: dict[str, str] = {
    "organizations_visible": "Organizations listed for the signed-in profile",
}


class MetricsCollector:
    def __init__(self) -> None:
        self._counters: dict[str, int] = {name: 0 for name in COUNTERS}
        self._gauges: dict[str, float] = {}
        self._started = time.monotonic()

    def inc(self, name: str, value: int = 1) -> None:
        if name not in COUNTERS:
            raise KeyError(f"Unknown counter: {name}")
        self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        if name not in GAUGES:
            raise KeyError(f"Unknown gauge: {name}")
        self._gauges[name] = value

    def get(self, name: str) -> int | float:
        if name in self._gauges:
            return self._gauges[name]
        return self._counters.get(name, 0)

    def uptime(self) -> float:
        return time.monotonic() - self._started

    def to_prometheus(self) -> str:
        lines = []
        for name, help_text in COUNTERS.items():
            lines.append(f"# HELP {PREFIX}{name} {help_text}")
            lines.append(f"# TYPE {PREFIX}{name} counter")
            lines.append(f"{PREFIX}{name} {self._counters[name]}")
        for name, value in sorted(self._gauges.items()):
            lines.append(f"# HELP {PREFIX}{name} {GAUGES[name]}")
            lines.append(f"# TYPE {PREFIX}{name} gauge")
            lines.append(f"{PREFIX}{name} {value}")
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {self.uptime():.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "uptime_seconds": self.uptime(),
        }
