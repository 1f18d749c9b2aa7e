from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ErrorType(str, Enum):
    TIMEOUT = "timeout"
    CONNECT = "connect"
    SERVER = "server"
    PROTOCOL = "protocol"
    OTHER = "other"


@dataclass(slots=True)
class RunCounters:
    requests: int = 0
    responses: int = 0
    errors: int = 0
    errors_by_type: dict[ErrorType, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def completed(self) -> int:
        return self.responses + self.errors

    def record_success(self) -> None:
        self.responses += 1

    def record_error(self, error_type: ErrorType) -> None:
        self.errors += 1
        self.errors_by_type[error_type] = self.errors_by_type.get(error_type, 0) + 1

    def elapsed(self, now: float | None = None) -> float:
        if now is None:
            now = time.perf_counter()
        return max(0.0, now - self.started_at)


@dataclass(frozen=True, slots=True)
class Report:
    concurrency: int
    total_requests: int
    total_responses: int
    total_errors: int
    total_time_seconds: float
    rps: int
    mean_time_ms: float
    errors_by_type: Mapping[ErrorType, int] = field(default_factory=dict)

    @property
    def mean_time_across_ms(self) -> float:
        return self.mean_time_ms / self.concurrency

    def as_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "total_requests": self.total_requests,
            "total_responses": self.total_responses,
            "total_errors": self.total_errors,
            "total_time_seconds": self.total_time_seconds,
            "rps": self.rps,
            "mean_time_ms": self.mean_time_ms,
            "errors_by_type": {k.value: v for k, v in self.errors_by_type.items()},
        }
