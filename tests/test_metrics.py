from __future__ import annotations

import threading

import pytest

from app.metrics import MetricsCollector, Phase, parse_server_timing


def test_parse_server_timing_basic():
    assert parse_server_timing("ocr;dur=8000, llm;dur=12000") == {"ocr": 8000.0, "llm": 12000.0}


def test_parse_server_timing_skips_malformed_segments():
    header = "ocr;dur=8000, broken;dur=abc, ;dur=5, nodur, llm;dur=12000"
    assert parse_server_timing(header) == {"ocr": 8000.0, "llm": 12000.0}


def test_parse_server_timing_tolerates_desc_and_keeps_first_duplicate():
    header = 'llm;desc="GPT";dur=12000, post;dur=500, llm;dur=1'
    assert parse_server_timing(header) == {"llm": 12000.0, "post": 500.0}


@pytest.mark.parametrize("header", [None, "", "   ", ",,,"])
def test_parse_server_timing_empty(header):
    assert parse_server_timing(header) == {}


def test_record_and_compute_stats():
    collector = MetricsCollector(capacity=100)
    for ms in range(1, 21):
        collector.record(Phase.OCR, 0.0, ms / 1000.0)
    stats = collector.compute_stats("ocr")
    assert stats.count == 20
    assert stats.p50_ms == pytest.approx(11.0)
    assert stats.p95_ms == pytest.approx(20.0)
    assert stats.max_ms == pytest.approx(20.0)
    assert stats.mean_ms == pytest.approx(10.5)


def test_compute_stats_for_unrecorded_phase_is_zero():
    stats = MetricsCollector().compute_stats(Phase.PARSING)
    assert stats.count == 0
    assert stats.to_dict()["p95_ms"] == 0.0


def test_buffer_evicts_oldest_when_full():
    collector = MetricsCollector(capacity=3)
    for i in range(5):
        collector.record(Phase.MAPPING, float(i), float(i) + 0.001, {"job_id": f"job_{i}"})
    assert [m.job_id for m in collector.get_all()] == ["job_2", "job_3", "job_4"]


def test_record_never_raises_on_bad_input():
    collector = MetricsCollector()
    collector.record("not-a-phase", 0.0, 1.0)
    collector.record(Phase.OCR, "later", 1.0)  # type: ignore[arg-type]
    collector.record(Phase.OCR, 10**400, 1.0)
    collector.record(Phase.OCR, 0.0, 10**400)
    collector.record(Phase.OCR, 0.0, 1.0, {"server_timing": 12})
    measurements = collector.get_all()
    assert len(measurements) == 1
    assert measurements[0].server_timing == {}


def test_record_parses_server_timing_metadata():
    collector = MetricsCollector()
    collector.record(Phase.TTFB, 0.0, 0.5, {"server_timing": "ocr;dur=120, analysis;dur=300"})
    assert collector.get_all()[0].server_timing == {"ocr": 120.0, "analysis": 300.0}


def test_record_accepts_server_timing_mapping():
    collector = MetricsCollector()
    collector.record(Phase.TTFB, 0.0, 0.5, {"server_timing": {"ocr": 8000.0, "llm": 12000}})
    assert collector.get_all()[0].server_timing == {"ocr": 8000.0, "llm": 12000.0}


def test_record_skips_bad_server_timing_entries_individually():
    collector = MetricsCollector()
    timings = {"ocr": "250", "llm": "slow", "": 5, 3: 1.0, "save": -1, "nan": float("nan"), "huge": 10**400}
    collector.record(Phase.TTFB, 0.0, 0.5, {"server_timing": timings})
    assert collector.get_all()[0].server_timing == {"ocr": 250.0}


def test_get_all_returns_a_snapshot():
    collector = MetricsCollector()
    collector.record(Phase.OCR, 0.0, 1.0)
    snapshot = collector.get_all()
    collector.clear()
    assert len(snapshot) == 1
    assert collector.get_all() == []


def test_bottleneck_is_phase_with_largest_mean():
    collector = MetricsCollector()
    collector.record(Phase.OCR, 0.0, 0.2)
    collector.record(Phase.OCR, 1.0, 1.4)
    collector.record(Phase.ANALYSIS, 2.0, 3.0)
    collector.record(Phase.TOTAL, 0.0, 10.0)
    assert collector.analyze_bottleneck() is Phase.ANALYSIS


def test_bottleneck_tie_goes_to_most_recent():
    collector = MetricsCollector()
    collector.record(Phase.ANALYSIS, 0.0, 1.0)
    collector.record(Phase.OCR, 5.0, 6.0)
    assert collector.analyze_bottleneck() is Phase.OCR
    collector.record(Phase.ANALYSIS, 10.0, 11.0)
    assert collector.analyze_bottleneck() is Phase.ANALYSIS


def test_bottleneck_empty_buffer():
    assert MetricsCollector().analyze_bottleneck() is None


def test_phase_timer_records_even_on_error():
    collector = MetricsCollector()
    with pytest.raises(ValueError):
        with collector.phase_timer(Phase.PERSIST, job_id="scan_1"):
            raise ValueError("boom")
    [m] = collector.get_all()
    assert m.phase is Phase.PERSIST
    assert m.job_id == "scan_1"


def test_format_server_timing_for_job():
    collector = MetricsCollector()
    collector.record(Phase.OCR, 0.0, 0.25, {"job_id": "scan_a"})
    collector.record(Phase.ANALYSIS, 0.25, 1.0, {"job_id": "scan_a"})
    collector.record(Phase.OCR, 0.0, 9.0, {"job_id": "scan_b"})
    header = collector.format_server_timing("scan_a")
    assert header == "ocr;dur=250.0, analysis;dur=750.0"
    assert parse_server_timing(header) == {"ocr": 250.0, "analysis": 750.0}
    assert collector.format_server_timing("scan_missing") == ""


def test_concurrent_records_are_all_kept():
    collector = MetricsCollector(capacity=10_000)

    def _worker() -> None:
        for i in range(500):
            collector.record(Phase.QUICK, float(i), float(i) + 0.001)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert collector.compute_stats(Phase.QUICK).count == 4000


def test_summary_lists_recorded_phases_in_pipeline_order():
    collector = MetricsCollector(capacity=50)
    collector.record(Phase.ANALYSIS, 0.0, 1.0)
    collector.record(Phase.OCR, 0.0, 0.5)
    summary = collector.summary()
    assert [p["phase"] for p in summary["phases"]] == ["ocr", "analysis"]
    assert summary["bottleneck"] == "analysis"
    assert summary["sample_count"] == 2
    assert summary["capacity"] == 50
