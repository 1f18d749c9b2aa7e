from __future__ import annotations

from mcload.config import DriverVariant, RunConfig, TargetConfig
from mcload.loadgen.runner import LoadTest, run, run_load_test
from mcload.metrics import Report

__all__ = [
    "DriverVariant",
    "LoadTest",
    "Report",
    "RunConfig",
    "TargetConfig",
    "run",
    "run_load_test",
]
