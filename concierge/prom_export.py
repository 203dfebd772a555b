from __future__ import annotations

import threading
from bisect import bisect_left
from typing import Mapping

from .metrics import LABELLED_METRICS


LATENCY_BUCKETS_MS = (50, 100, 250, 500, 800, 1000, 1500, 2500, 5000, 10000)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def split_series(name: str, labelled: Mapping[str, str] = LABELLED_METRICS) -> tuple[str, str]:
    """
    Map an internal dotted metric name to (prometheus family, label body).

    "ws.close_reason_total.WRITE_ERROR" -> ("ws_close_reason_total", 'reason="WRITE_ERROR"')
    """
    for family, label in labelled.items():
        if name.startswith(family + "."):
            value = name[len(family) + 1 :]
            return family.replace(".", "_"), f'{label}="{_escape_label(value)}"'
    return (name or "").replace(".", "_"), ""


class _Histogram:
    __slots__ = ("bounds", "bucket_counts", "total", "n")

    def __init__(self, bounds: tuple[int, ...]) -> None:
        self.bounds = bounds
        # One slot per bound plus +Inf; not cumulative.
        self.bucket_counts = [0] * (len(bounds) + 1)
        self.total = 0
        self.n = 0

    def observe(self, value: int) -> None:
        v = int(value)
        self.total += v
        self.n += 1
        self.bucket_counts[bisect_left(self.bounds, v)] += 1


class PromExporter:
    """
    Process-wide Prometheus text exporter shared by every call and chat request.

    Histograms keep bucket counts only, so memory does not grow with traffic. Dotted suffixes
    on the families in LABELLED_METRICS become a label, which keeps per-reason counters in
    one family instead of one metric name per reason.
    """

    def __init__(
        self,
        *,
        ms_buckets: tuple[int, ...] = LATENCY_BUCKETS_MS,
        labelled: Mapping[str, str] = LABELLED_METRICS,
    ) -> None:
        self._lock = threading.Lock()
        self._bounds = tuple(sorted(int(b) for b in ms_buckets))
        self._labelled = dict(labelled)
        self._counters: dict[str, dict[str, int]] = {}
        self._gauges: dict[str, dict[str, int]] = {}
        self._hists: dict[str, _Histogram] = {}

    def inc(self, name: str, value: int = 1) -> None:
        family, labels = split_series(name, self._labelled)
        with self._lock:
            series = self._counters.setdefault(family, {})
            series[labels] = series.get(labels, 0) + int(value)

    def set(self, name: str, value: int) -> None:
        family, labels = split_series(name, self._labelled)
        with self._lock:
            self._gauges.setdefault(family, {})[labels] = int(value)

    def observe(self, name: str, value: int) -> None:
        family, _ = split_series(name, self._labelled)
        with self._lock:
            hist = self._hists.get(family)
            if hist is None:
                hist = self._hists[family] = _Histogram(self._bounds)
            hist.observe(value)

    def render(self) -> str:
        out: list[str] = []
        with self._lock:
            for kind, table in (("counter", self._counters), ("gauge", self._gauges)):
                for family in sorted(table):
                    out.append(f"# TYPE {family} {kind}")
                    for labels, v in sorted(table[family].items()):
                        out.append(f"{family}{{{labels}}} {v}" if labels else f"{family} {v}")
            for family in sorted(self._hists):
                hist = self._hists[family]
                out.append(f"# TYPE {family} histogram")
                running = 0
                for le, c in zip([*map(str, hist.bounds), "+Inf"], hist.bucket_counts):
                    running += c
                    out.append(f'{family}_bucket{{le="{le}"}} {running}')
                out.append(f"{family}_sum {hist.total}")
                out.append(f"{family}_count {hist.n}")
        return "\n".join(out) + "\n"


GLOBAL_PROM = PromExporter()
