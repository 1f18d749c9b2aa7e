from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import pytest

from mcload.config import RunConfig, TargetConfig
from mcload.loadgen.connection import CacheConnectionError, CacheServerError
from mcload.loadgen.runner import LoadTest, SlotState, run_load_test
from mcload.metrics import ErrorType, Report


class FakeConnection:
    def __init__(self, latency: float = 0.0, fail: bool = False) -> None:
        self.latency = latency
        self.fail = fail
        self.gets = 0
        self.closes = 0
        self.outstanding = 0
        self.max_outstanding = 0

    async def get(self, key: str) -> bytes | None:
        self.gets += 1
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        try:
            await asyncio.sleep(self.latency)
        finally:
            self.outstanding -= 1
        if self.fail:
            raise CacheServerError("SERVER_ERROR out of memory")
        return b"value"

    async def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        return True

    async def close(self) -> None:
        self.closes += 1


def make_connector(
    opened: list[FakeConnection],
    latency: float = 0.0,
    fail: bool = False,
    refuse: set[int] | None = None,
) -> Callable[[RunConfig], Awaitable[FakeConnection]]:
    attempts = 0

    async def connect(config: RunConfig) -> FakeConnection:
        nonlocal attempts
        attempt = attempts
        attempts += 1
        await asyncio.sleep(0)
        if refuse and attempt in refuse:
            raise CacheConnectionError("Connection refused")
        conn = FakeConnection(latency=latency, fail=fail)
        opened.append(conn)
        return conn

    return connect


def _run(config: RunConfig, connect: Callable[[RunConfig], Awaitable[Any]]) -> tuple[Report, list[Report]]:
    delivered: list[Report] = []

    async def scenario() -> Report:
        return await asyncio.wait_for(
            run_load_test(config, on_finish=delivered.append, connect=connect),
            timeout=5,
        )

    return asyncio.run(scenario()), delivered


def test_request_bound_with_concurrency() -> None:
    opened: list[FakeConnection] = []
    config = RunConfig(concurrency=4, max_requests=100)
    report, delivered = _run(config, make_connector(opened))
    assert delivered == [report]
    assert report.total_requests == 100
    assert report.total_responses == 100
    assert report.total_errors == 0
    assert report.concurrency == 4
    assert report.rps == round(100 / report.total_time_seconds)
    assert len(opened) == 4
    assert sum(conn.gets for conn in opened) == 100
    assert all(conn.closes == 1 for conn in opened)
    assert all(conn.max_outstanding == 1 for conn in opened)


def test_failed_connect_reduces_concurrency() -> None:
    opened: list[FakeConnection] = []
    config = RunConfig(concurrency=4, max_requests=30)
    report, _ = _run(config, make_connector(opened, latency=0.001, refuse={2}))
    assert len(opened) == 3
    assert report.total_requests == 30
    assert report.total_responses == 30
    assert all(conn.gets > 0 for conn in opened)


def test_all_connects_failing_still_finishes() -> None:
    config = RunConfig(concurrency=3, max_requests=10)
    report, delivered = _run(config, make_connector([], refuse={0, 1, 2}))
    assert delivered == [report]
    assert report.total_requests == 0
    assert report.rps == 0
    assert report.mean_time_ms == 0.0


def test_failed_requests_are_counted_and_retried() -> None:
    opened: list[FakeConnection] = []
    config = RunConfig(concurrency=2, max_requests=12)
    report, _ = _run(config, make_connector(opened, fail=True))
    assert report.total_requests == 12
    assert report.total_responses == 0
    assert report.total_errors == 12
    assert report.errors_by_type == {ErrorType.SERVER: 12}


def test_request_timeout_counts_as_error() -> None:
    config = RunConfig(target=TargetConfig(timeout_sec=0.05), max_requests=2)
    report, _ = _run(config, make_connector([], latency=1.0))
    assert report.total_errors == 2
    assert report.errors_by_type == {ErrorType.TIMEOUT: 2}


def test_time_bound() -> None:
    config = RunConfig(concurrency=1, max_seconds=0.3)
    report, _ = _run(config, make_connector([], latency=0.01))
    assert report.total_time_seconds >= 0.3
    assert report.total_time_seconds < 0.6
    assert 10 <= report.total_requests <= 40
    assert report.total_responses + report.total_errors == report.total_requests


def test_late_responses_after_finish_are_ignored() -> None:
    opened: list[FakeConnection] = []
    config = RunConfig(concurrency=4, max_seconds=0.1)

    async def scenario() -> tuple[LoadTest, Report]:
        load_test = LoadTest(config, connect=make_connector(opened, latency=0.02))
        load_test.start(lambda report: None)
        report = await load_test.wait()
        await asyncio.sleep(0.05)
        return load_test, report

    load_test, report = asyncio.run(scenario())
    assert load_test.counters.responses == report.total_responses
    assert load_test.counters.requests == report.total_requests
    assert report.total_responses + report.total_errors <= report.total_requests
    assert all(slot.state is SlotState.CLOSED for slot in load_test.slots)
    assert all(conn.closes == 1 for conn in opened)


def test_finish_is_idempotent() -> None:
    opened: list[FakeConnection] = []
    delivered: list[Report] = []

    async def scenario() -> LoadTest:
        load_test = LoadTest(RunConfig(concurrency=2, max_requests=5), connect=make_connector(opened))
        load_test.start(delivered.append)
        await load_test.wait()
        load_test.finish()
        load_test.finish()
        await asyncio.sleep(0)
        return load_test

    load_test = asyncio.run(scenario())
    assert len(delivered) == 1
    assert delivered[0] is load_test.report
    assert all(conn.closes == 1 for conn in opened)


def test_start_after_finish_delivers_once() -> None:
    delivered: list[Report] = []

    async def scenario() -> Report:
        load_test = LoadTest(RunConfig(max_requests=3), connect=make_connector([]))
        report = await load_test.wait()
        load_test.start(delivered.append)
        with pytest.raises(RuntimeError):
            load_test.start(delivered.append)
        return report

    report = asyncio.run(scenario())
    assert delivered == [report]


def test_protocol_violations_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> Report:
        load_test = LoadTest(RunConfig(max_requests=1), connect=make_connector([]))
        load_test.start(lambda report: None)
        load_test.on_complete(0, None, b"stray")
        load_test.dispatch(0)
        return await load_test.wait()

    with caplog.at_level(logging.ERROR, logger="mcload.loadgen.runner"):
        report = asyncio.run(scenario())
    messages = [r.getMessage() for r in caplog.records]
    assert "Slot 0 is not busy: connecting" in messages
    assert "Slot 0 not idle: connecting" in messages
    assert report.total_requests == 1
    assert report.total_responses == 1


def test_report_is_logged_without_callback(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> Report:
        return await run_load_test(RunConfig(concurrency=2, max_requests=4), connect=make_connector([]))

    with caplog.at_level(logging.INFO, logger="mcload.report"):
        report = asyncio.run(scenario())
    messages = [r.getMessage() for r in caplog.records if r.name == "mcload.report"]
    assert messages[0] == "Concurrency Level:      2"
    assert "Complete requests:      4" in messages
    assert report.total_responses == 4


def test_callback_errors_do_not_escape(caplog: pytest.LogCaptureFixture) -> None:
    def explode(report: Report) -> None:
        raise RuntimeError("boom")

    async def scenario() -> Report:
        return await run_load_test(RunConfig(max_requests=2), on_finish=explode, connect=make_connector([]))

    with caplog.at_level(logging.ERROR, logger="mcload.loadgen.runner"):
        report = asyncio.run(scenario())
    assert report.total_responses == 2
    assert any(r.getMessage() == "Finish callback failed" for r in caplog.records)
