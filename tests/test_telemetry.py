# -*- coding: utf-8 -*-
from __future__ import annotations
import csv
import time

import pytest

from facecascade.errors import UnknownStage
from facecascade.telemetry import ALPHA, LatencyTracker, PWin, Telemetry


class FakeClock:
    def __init__(self): self.t = 0.0
    def __call__(self): return self.t
    def advance(self, sec): self.t += sec


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return LatencyTracker(clock=clock)


def _timed(tracker, clock, name, ms):
    tracker.start(name)
    clock.advance(ms / 1e3)
    tracker.finish(name)


def test_first_sample_seeds_average(tracker, clock):
    _timed(tracker, clock, "fd", 10)
    assert tracker.smoothed_duration("fd") == pytest.approx(10.0)
    assert tracker.last_duration("fd") == pytest.approx(10.0)


def test_exponential_smoothing(tracker, clock):
    _timed(tracker, clock, "fd", 10)
    _timed(tracker, clock, "fd", 30)
    assert tracker.smoothed_duration("fd") == pytest.approx(10 * (1 - ALPHA) + 30 * ALPHA)
    assert tracker.total_duration("fd") == pytest.approx(40.0)
    assert tracker["fd"].count == 2


def test_live_estimate_before_first_finish(tracker, clock):
    tracker.start("hp")
    clock.advance(0.004)
    assert tracker.smoothed_duration("hp") == pytest.approx(4.0)


def test_unknown_name(tracker):
    with pytest.raises(UnknownStage) as ei:
        tracker.smoothed_duration("nope")
    assert str(ei.value) == "No timer with name nope."
    with pytest.raises(KeyError):
        tracker.finish("nope")
    assert "nope" not in tracker


def test_span_times_the_block(tracker, clock):
    with tracker.span("em"):
        clock.advance(0.002)
    assert tracker.last_duration("em") == pytest.approx(2.0)


def test_span_finishes_on_error(tracker, clock):
    with pytest.raises(RuntimeError):
        with tracker.span("lm"):
            clock.advance(0.001)
            raise RuntimeError("boom")
    assert tracker["lm"].count == 1


def test_report(tracker, clock):
    _timed(tracker, clock, "a", 5)
    _timed(tracker, clock, "b", 7)
    rep = tracker.report()
    assert tracker.names() == ["a", "b"]
    assert set(rep["a"]) == {"count", "total", "last", "smoothed", "p95"}
    assert rep["b"]["smoothed"] == pytest.approx(7.0)


def test_pwin_percentile():
    w = PWin(cap=4)
    assert w.p(95) == 0.0
    for x in (1, 2, 3, 4, 5):
        w.add(x)
    assert w.p(0) == 2.0          # oldest fell out
    assert w.p(100) == 5.0


def test_sample_row(tracker, clock):
    tel = Telemetry(csv_path="", tracker=tracker)
    _timed(tracker, clock, "total", 20)
    tel.inc("frames"); tel.inc("faces", 3)
    tel.gauge("q", lambda: 7)
    row = tel.sample()
    assert row["total_ms"] == pytest.approx(20.0)
    assert row["total_fps"] == pytest.approx(50.0)
    assert (row["frames"], row["faces"], row["q"]) == (1, 3, 7)


def test_periodic_csv(tmp_path):
    out = tmp_path / "telem.csv"
    tel = Telemetry(csv_path=str(out), period_sec=0.01)
    tel.inc("frames", 2)
    tel.start()
    time.sleep(0.1)
    tel.stop()
    with open(out, newline="") as f:
        rows = list(csv.DictReader(f))
    assert rows
    assert rows[-1]["frames"] == "2"


def test_stop_without_path_writes_nothing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    tel = Telemetry(csv_path="", period_sec=0.01)
    tel.start()
    tel.stop()
    assert list(tmp_path.iterdir()) == []
