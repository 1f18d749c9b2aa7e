from __future__ import annotations

import logging

from mcload.metrics.models import Report, RunCounters


def build_report(counters: RunCounters, now: float, concurrency: int) -> Report:
    """Compute the final statistics of a run.

    A run that issued no requests (every connect failed, say) reports a rate
    of 0 and a mean time of 0.0 rather than dividing by zero.
    """
    elapsed = counters.elapsed(now)
    requests = counters.requests
    if requests and elapsed > 0:
        rps = round(requests / elapsed)
    else:
        rps = 0
    mean_time_ms = 1000.0 * elapsed / requests if requests else 0.0
    return Report(
        concurrency=concurrency,
        total_requests=requests,
        total_responses=counters.responses,
        total_errors=counters.errors,
        total_time_seconds=elapsed,
        rps=rps,
        mean_time_ms=mean_time_ms,
        errors_by_type=dict(counters.errors_by_type),
    )


def render_report(report: Report) -> list[str]:
    lines = [
        f"Concurrency Level:      {report.concurrency}",
        f"Time taken for tests:   {report.total_time_seconds:.3f} seconds",
        f"Complete requests:      {report.total_responses}",
        f"Failed requests:        {report.total_errors}",
    ]
    for error_type, count in sorted(report.errors_by_type.items(), key=lambda kv: kv[0].value):
        lines.append(f"   ({error_type.value}: {count})")
    lines.extend(
        [
            f"Requests per second:    {report.rps} [#/sec] (mean)",
            f"Time per request:       {report.mean_time_ms:.3f} [ms] (mean)",
            f"Time per request:       {report.mean_time_across_ms:.3f} [ms] "
            "(mean, across all concurrent requests)",
        ]
    )
    return lines


def log_report(report: Report, logger: logging.Logger) -> None:
    for line in render_report(report):
        logger.info(line)
