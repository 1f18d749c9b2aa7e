from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class DriverVariant(str, Enum):
    NATIVE = "native"
    PYMEMCACHE = "pymemcache"


def new_token() -> str:
    return uuid.uuid4().hex


def _default_key() -> str:
    return "test" + new_token()


@dataclass(frozen=True, slots=True)
class TargetConfig:
    host: str = "localhost"
    port: int = 11211
    timeout_sec: float = 10.0

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            msg = f"Invalid port: {self.port}"
            raise ValueError(msg)
        if self.timeout_sec <= 0:
            msg = f"timeout_sec must be > 0, got {self.timeout_sec}"
            raise ValueError(msg)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Settings for one load test run.

    At least one termination bound is always in effect: when neither
    ``max_requests`` nor ``max_seconds`` is given the run sends exactly one
    request.
    """

    target: TargetConfig = field(default_factory=TargetConfig)
    concurrency: int = 1
    max_requests: int | None = None
    max_seconds: float | None = None
    key: str = field(default_factory=_default_key)
    driver: DriverVariant = DriverVariant.NATIVE
    run_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    notes: str = ""

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            msg = f"concurrency must be >= 1, got {self.concurrency}"
            raise ValueError(msg)
        if self.max_requests is not None and self.max_requests < 1:
            msg = f"max_requests must be >= 1, got {self.max_requests}"
            raise ValueError(msg)
        if self.max_seconds is not None and self.max_seconds <= 0:
            msg = f"max_seconds must be > 0, got {self.max_seconds}"
            raise ValueError(msg)
        if not self.key or any(c.isspace() for c in self.key):
            msg = f"Invalid key: {self.key!r}"
            raise ValueError(msg)
        if self.max_requests is None and self.max_seconds is None:
            # frozen: bypass __setattr__ for the one derived default
            object.__setattr__(self, "max_requests", 1)
        object.__setattr__(self, "driver", DriverVariant(self.driver))

    def to_metadata(self) -> Mapping[str, Any]:
        return {
            "run_id": self.run_id or "",
            "created_at": self.created_at.isoformat(),
            "concurrency": self.concurrency,
            "max_requests": self.max_requests,
            "max_seconds": self.max_seconds,
            "key": self.key,
            "driver": self.driver.value,
            "notes": self.notes,
            "target": {
                "host": self.target.host,
                "port": self.target.port,
                "timeout_sec": self.target.timeout_sec,
            },
        }
