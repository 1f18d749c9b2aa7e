from __future__ import annotations

import logging

import pytest
from hypothesis import given, strategies as st

from mcload.metrics import ErrorType, RunCounters, build_report, log_report, render_report


@given(
    requests=st.integers(min_value=1, max_value=1_000_000),
    elapsed=st.floats(min_value=0.001, max_value=1000.0),
    concurrency=st.integers(min_value=1, max_value=512),
)
def test_rates_follow_elapsed_time(requests: int, elapsed: float, concurrency: int) -> None:
    counters = RunCounters(requests=requests, responses=requests, started_at=0.0)
    report = build_report(counters, now=elapsed, concurrency=concurrency)
    assert report.rps == round(requests / elapsed)
    assert report.mean_time_ms == pytest.approx(1000 * elapsed / requests)
    assert report.mean_time_across_ms == pytest.approx(report.mean_time_ms / concurrency)


def test_zero_requests_fall_back_to_zero_rates() -> None:
    counters = RunCounters(started_at=10.0)
    report = build_report(counters, now=12.0, concurrency=4)
    assert report.total_requests == 0
    assert report.total_time_seconds == 2.0
    assert report.rps == 0
    assert report.mean_time_ms == 0.0


def test_counters_copy_into_report() -> None:
    counters = RunCounters(started_at=0.0)
    counters.requests = 10
    for _ in range(7):
        counters.record_success()
    for _ in range(3):
        counters.record_error(ErrorType.TIMEOUT)
    report = build_report(counters, now=2.0, concurrency=2)
    counters.record_error(ErrorType.SERVER)
    assert report.total_responses == 7
    assert report.total_errors == 3
    assert report.errors_by_type == {ErrorType.TIMEOUT: 3}
    assert report.rps == 5
    assert report.mean_time_ms == 200.0
    assert report.mean_time_across_ms == 100.0
    assert report.as_dict()["errors_by_type"] == {"timeout": 3}


def test_render_report_lines() -> None:
    counters = RunCounters(requests=100, responses=99, started_at=0.0)
    counters.record_error(ErrorType.CONNECT)
    lines = render_report(build_report(counters, now=0.5, concurrency=4))
    assert lines[0] == "Concurrency Level:      4"
    assert lines[1] == "Time taken for tests:   0.500 seconds"
    assert "Complete requests:      99" in lines
    assert "Failed requests:        1" in lines
    assert "   (connect: 1)" in lines
    assert "Requests per second:    200 [#/sec] (mean)" in lines
    assert lines[-2] == "Time per request:       5.000 [ms] (mean)"
    assert lines[-1].endswith("1.250 [ms] (mean, across all concurrent requests)")


def test_log_report_emits_every_line(caplog: pytest.LogCaptureFixture) -> None:
    report = build_report(RunCounters(requests=1, responses=1, started_at=0.0), now=1.0, concurrency=1)
    logger = logging.getLogger("mcload.test")
    with caplog.at_level(logging.INFO, logger="mcload.test"):
        log_report(report, logger)
    assert [r.getMessage() for r in caplog.records] == render_report(report)
