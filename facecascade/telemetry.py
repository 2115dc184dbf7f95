# facecascade/telemetry.py
from __future__ import annotations
import time, csv, threading, collections, logging
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from .errors import UnknownStage

log = logging.getLogger(__name__)

_perf = time.perf_counter

ALPHA = 0.1
_UNSET = -1.0


class PWin:
    def __init__(self, cap=512): self.d=collections.deque(maxlen=cap)
    def add(self, x): self.d.append(x)
    def p(self, q):
        if not self.d: return 0.0
        arr = sorted(self.d); k = max(0, min(len(arr)-1, int((q/100.0)*(len(arr)-1))))
        return float(arr[k])


class Counter:
    def __init__(self): self.n=0
    def inc(self, k=1): self.n+=k
    def get(self): return self.n


class LatencyRecord:
    """Call statistics of one named stage. Durations in milliseconds."""

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.last = 0.0
        self.smoothed = _UNSET
        self.started_at = 0.0      # clock seconds
        self.win = PWin(512)

    def start(self, now: float):
        self.started_at = now

    def finish(self, now: float):
        self.last = (now - self.started_at) * 1e3
        self.count += 1
        self.total += self.last
        if self.smoothed < 0:
            self.smoothed = self.last
        else:
            self.smoothed = self.smoothed * (1.0 - ALPHA) + self.last * ALPHA
        self.win.add(self.last)
        self.started_at = now

    def smoothed_at(self, now: float) -> float:
        # nothing finished yet: report the in-flight elapsed time instead
        if self.smoothed < 0:
            return max(0.0, (now - self.started_at) * 1e3)
        return self.smoothed

    def as_dict(self, now: float) -> Dict[str, float]:
        return {
            "count": self.count,
            "total": round(self.total, 3),
            "last": round(self.last, 3),
            "smoothed": round(self.smoothed_at(now), 3),
            "p95": round(self.win.p(95), 3),
        }


class LatencyTracker:
    """Stage name -> LatencyRecord. Mutated from the control thread only."""

    def __init__(self, clock: Callable[[], float] = _perf):
        self._clock = clock
        self._records: Dict[str, LatencyRecord] = {}

    def start(self, name: str):
        rec = self._records.get(name)
        if rec is None:
            rec = self._records[name] = LatencyRecord()
        rec.start(self._clock())

    def finish(self, name: str):
        self[name].finish(self._clock())

    def smoothed_duration(self, name: str) -> float:
        return self[name].smoothed_at(self._clock())

    def total_duration(self, name: str) -> float:
        return self[name].total

    def last_duration(self, name: str) -> float:
        return self[name].last

    def __getitem__(self, name: str) -> LatencyRecord:
        try:
            return self._records[name]
        except KeyError:
            raise UnknownStage(f"No timer with name {name}.") from None

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def names(self):
        return list(self._records)

    @contextmanager
    def span(self, name: str):
        self.start(name)
        try: yield
        finally: self.finish(name)

    def report(self) -> Dict[str, Dict[str, float]]:
        now = self._clock()
        return {name: rec.as_dict(now) for name, rec in list(self._records.items())}


class Telemetry:
    """Latency tracker plus counters/gauges, sampled periodically into CSV rows."""

    def __init__(self, csv_path="telemetry.csv", period_sec=1.0, tracker: Optional[LatencyTracker] = None):
        self.tracker = tracker or LatencyTracker()
        self.counters = collections.defaultdict(Counter)
        self.gauges: Dict[str, Callable[[], float]] = {}
        self._period = period_sec
        self._csv = csv_path
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        # kept in memory while running, written on stop()
        self._rows = []

    def start(self): self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=1)
        if not self._csv:
            return
        try:
            self.save(self._csv)
        except OSError as e:
            log.error("[Telemetry] save failed: %s", e)

    def inc(self, name, k=1): self.counters[name].inc(k)
    def gauge(self, name, fn): self.gauges[name]=fn

    @staticmethod
    def _fps(ms): return round(1000.0/ms,2) if ms>0 else 0.0

    def sample(self) -> Dict[str, float]:
        row = {"t": round(time.time(), 3)}
        for name, st in self.tracker.report().items():
            row[f"{name}_ms"] = st["smoothed"]
            row[f"{name}_fps"] = self._fps(st["smoothed"])
        for name, c in list(self.counters.items()):
            row[name] = c.get()
        for name, fn in list(self.gauges.items()):
            row[name] = fn()
        return row

    def save(self, path: str):
        cols = ["t"]
        for r in self._rows:
            cols += [k for k in r if k not in cols]
        with open(path, "w", newline="") as f:
            w = csv.DictWriter(f, fieldnames=cols, restval="")
            w.writeheader()
            w.writerows(self._rows)
        log.info("[Telemetry] saved %d rows -> %s", len(self._rows), path)

    def _run(self):
        while not self._stop.wait(self._period):
            self._rows.append(self.sample())
