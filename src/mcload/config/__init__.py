from __future__ import annotations

from mcload.config.models import DriverVariant, RunConfig, TargetConfig, new_token

__all__ = ["DriverVariant", "RunConfig", "TargetConfig", "new_token"]
