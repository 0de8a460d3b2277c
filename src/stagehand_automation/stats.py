from __future__ import annotations

import threading

from .types import ActionResult

COUNTERS = ("ok", "changed", "unreachable", "failures", "skipped")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FAILURES = 2
EXIT_UNREACHABLE = 3


class AggregateStats:
    """Per-host task outcome counters shared by all host workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, dict[str, int]] = {}

    def increment(self, what: str, host: str) -> None:
        if what not in COUNTERS:
            raise KeyError(f"unknown statistic '{what}'")
        with self._lock:
            counts = self._counts.setdefault(host, dict.fromkeys(COUNTERS, 0))
            counts[what] += 1

    def compute(self, result: ActionResult, *, ignore_errors: bool = False) -> None:
        if result.unreachable:
            self.increment("unreachable", result.host)
        elif result.failed and not ignore_errors:
            self.increment("failures", result.host)
        elif result.skipped:
            self.increment("skipped", result.host)
        else:
            if result.changed:
                self.increment("changed", result.host)
            self.increment("ok", result.host)

    def summarize(self, host: str) -> dict[str, int]:
        with self._lock:
            return dict(self._counts.get(host, dict.fromkeys(COUNTERS, 0)))

    def hosts(self) -> list[str]:
        with self._lock:
            return sorted(self._counts)

    def failed_hosts(self) -> list[str]:
        with self._lock:
            return sorted(
                host
                for host, counts in self._counts.items()
                if counts["failures"] or counts["unreachable"]
            )

    def exit_code(self) -> int:
        with self._lock:
            counts = list(self._counts.values())
        if any(c["failures"] > 0 for c in counts):
            return EXIT_FAILURES
        if any(c["unreachable"] > 0 for c in counts):
            return EXIT_UNREACHABLE
        return EXIT_OK
