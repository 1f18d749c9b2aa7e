from __future__ import annotations

import logging
from dataclasses import replace

from mcload.config import DriverVariant, RunConfig, TargetConfig, new_token
from mcload.loadgen.runner import run_load_test, set_key
from mcload.metrics import Report
from mcload.server import CacheServer

logger = logging.getLogger(__name__)


class SelfTestError(Exception):
    pass


async def self_test(max_requests: int = 10000, port: int = 0, concurrency: int = 1) -> list[Report]:
    """Run the load test against a throwaway server once per driver."""
    reports: list[Report] = []
    async with CacheServer(port=port) as server:
        base = RunConfig(
            target=TargetConfig(host=server.host, port=server.port),
            concurrency=concurrency,
            max_requests=max_requests,
            key="test" + new_token(),
        )
        if not await set_key(base, {"b": "c"}, ttl=10):
            raise SelfTestError("Could not set test key")
        for driver in DriverVariant:
            config = replace(base, driver=driver)
            report = await run_load_test(config, on_finish=lambda r: None)
            logger.info("Self test with %s driver: %s responses", driver.value, report.total_responses)
            if report.total_responses != max_requests:
                msg = (
                    f"Invalid number of responses with {driver.value} driver: "
                    f"{report.total_responses} != {max_requests}"
                )
                raise SelfTestError(msg)
            reports.append(report)
    return reports
