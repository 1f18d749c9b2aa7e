from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine

from mcload.config import RunConfig
from mcload.loadgen.connection import ConnectFn, Connection, classify_error
from mcload.loadgen.factory import open_connection
from mcload.metrics import Report, RunCounters, build_report, log_report

logger = logging.getLogger(__name__)
report_logger = logging.getLogger("mcload.report")

FinishCallback = Callable[[Report], None]


class SlotState(str, Enum):
    CONNECTING = "connecting"
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(slots=True)
class Slot:
    index: int
    state: SlotState = SlotState.CONNECTING
    connection: Connection | None = None


class LoadTest:
    """A pool of connections repeatedly sending ``get(key)`` until a bound is hit.

    Must be created from inside a running event loop: construction captures
    the start time and schedules one connect per slot, and every slot starts
    sending as soon as its connect succeeds. All state is mutated from loop
    callbacks, so no locking is needed.
    """

    def __init__(self, config: RunConfig, connect: ConnectFn = open_connection) -> None:
        self.config = config
        self.counters = RunCounters()
        self.slots = [Slot(index) for index in range(config.concurrency)]
        self.report: Report | None = None
        self._connect = connect
        self._loop = asyncio.get_running_loop()
        self._done: asyncio.Future[Report] = self._loop.create_future()
        self._callback: FinishCallback | None = None
        self._started = False
        self._finished = False
        self._delivered = False
        self._requests: set[asyncio.Task[Any]] = set()
        self._background: set[asyncio.Task[None]] = set()
        for slot in self.slots:
            self._spawn(self._bootstrap(slot.index))

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self, on_finish: FinishCallback | None = None) -> None:
        """Register the callback that receives the report.

        Without a callback the report is logged as summary lines instead.
        Requests may already be flowing when this is called.
        """
        if self._started:
            raise RuntimeError("Load test already started")
        self._started = True
        self._callback = on_finish
        self._deliver()

    async def wait(self) -> Report:
        return await self._done

    def dispatch(self, index: int) -> None:
        if self._finished:
            return
        max_requests = self.config.max_requests
        if max_requests is not None and self.counters.requests >= max_requests:
            return
        slot = self.slots[index]
        if slot.state is not SlotState.IDLE or slot.connection is None:
            logger.error("Slot %s not idle: %s", index, slot.state.value)
            return
        logger.debug("Sending using %s: %s / %s", index, self.counters.requests, max_requests)
        slot.state = SlotState.IN_FLIGHT
        self.counters.requests += 1
        task = self._loop.create_task(self._request(slot.connection))
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)
        task.add_done_callback(functools.partial(self._on_request_done, index))

    def on_complete(self, index: int, error: BaseException | None, result: Any) -> None:
        if self._finished:
            logger.debug("Ignoring response on slot %s after finish", index)
            return
        slot = self.slots[index]
        if slot.state is not SlotState.IN_FLIGHT:
            logger.error("Slot %s is not busy: %s", index, slot.state.value)
            return
        if error is not None:
            logger.debug("Received error on slot %s: %r", index, error)
            self.counters.record_error(classify_error(error))
        else:
            logger.debug("Received response on slot %s: %r", index, result)
            self.counters.record_success()
        slot.state = SlotState.IDLE
        if self.is_finished():
            self.finish()
            return
        self.dispatch(index)

    def is_finished(self) -> bool:
        max_requests = self.config.max_requests
        if max_requests is not None and self.counters.completed >= max_requests:
            return True
        max_seconds = self.config.max_seconds
        if max_seconds is not None and self.counters.elapsed() >= max_seconds:
            return True
        return False

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.report = build_report(self.counters, time.perf_counter(), self.config.concurrency)
        in_flight = sum(1 for slot in self.slots if slot.state is SlotState.IN_FLIGHT)
        if in_flight:
            logger.debug("Finishing with %s requests in flight", in_flight)
        connections: list[Connection] = []
        for slot in self.slots:
            if slot.state in (SlotState.IDLE, SlotState.IN_FLIGHT) and slot.connection is not None:
                connections.append(slot.connection)
                slot.state = SlotState.CLOSED
        self._spawn(self._shutdown(connections))

    async def _bootstrap(self, index: int) -> None:
        slot = self.slots[index]
        try:
            connection = await self._connect(self.config)
        except Exception as exc:
            logger.error("Could not connect client %s to %s: %s", index, self.config.target.address, exc)
            slot.state = SlotState.FAILED
            self._finish_if_exhausted()
            return
        slot.connection = connection
        if self._finished:
            slot.state = SlotState.CLOSED
            await connection.close()
            return
        slot.state = SlotState.IDLE
        self.dispatch(index)
        self._finish_if_exhausted()

    def _finish_if_exhausted(self) -> None:
        # nothing connecting and nothing in flight: no completion will ever arrive
        if any(slot.state in (SlotState.CONNECTING, SlotState.IN_FLIGHT) for slot in self.slots):
            return
        if not self._finished:
            logger.warning("No usable connections left, finishing early")
            self.finish()

    async def _request(self, connection: Connection) -> bytes | None:
        return await asyncio.wait_for(
            connection.get(self.config.key),
            timeout=self.config.target.timeout_sec,
        )

    def _on_request_done(self, index: int, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            self.on_complete(index, asyncio.CancelledError(), None)
            return
        error = task.exception()
        self.on_complete(index, error, None if error is not None else task.result())

    async def _shutdown(self, connections: list[Connection]) -> None:
        results = await asyncio.gather(
            *(connection.close() for connection in connections),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("Error closing connection: %s", result)
        for task in list(self._requests):
            task.cancel()
        assert self.report is not None
        self._done.set_result(self.report)
        self._deliver()

    def _deliver(self) -> None:
        if not self._started or self._delivered or not self._done.done():
            return
        self._delivered = True
        report = self._done.result()
        if self._callback is None:
            log_report(report, report_logger)
            return
        try:
            self._callback(report)
        except Exception:
            logger.exception("Finish callback failed")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Load test task failed", exc_info=task.exception())


async def run_load_test(
    config: RunConfig,
    on_finish: FinishCallback | None = None,
    connect: ConnectFn = open_connection,
) -> Report:
    load_test = LoadTest(config, connect=connect)
    load_test.start(on_finish)
    return await load_test.wait()


def run(config: RunConfig, on_finish: FinishCallback | None = None) -> Report:
    return asyncio.run(run_load_test(config, on_finish))


async def set_key(
    config: RunConfig,
    value: Any,
    ttl: int = 10,
    connect: ConnectFn = open_connection,
) -> bool:
    """Store ``value`` under the run's key with a single throwaway connection."""
    connection = await connect(config)
    try:
        return await connection.set(config.key, value, ttl)
    finally:
        await connection.close()
