from __future__ import annotations

from mcload.metrics.models import ErrorType, Report, RunCounters
from mcload.metrics.report import build_report, log_report, render_report

__all__ = ["ErrorType", "Report", "RunCounters", "build_report", "log_report", "render_report"]
