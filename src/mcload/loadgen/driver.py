from __future__ import annotations

import asyncio
import socket
from typing import Any, Callable, TypeVar

from pymemcache.client.base import Client
from pymemcache.exceptions import (
    MemcacheClientError,
    MemcacheError,
    MemcacheServerError,
    MemcacheUnexpectedCloseError,
)

from mcload.config import TargetConfig
from mcload.loadgen.connection import (
    CacheConnectionError,
    CacheProtocolError,
    CacheServerError,
    encode_value,
)

T = TypeVar("T")


class PymemcacheConnection:
    """Connection backed by pymemcache; blocking calls run in worker threads.

    The pymemcache client is not thread-safe, so at most one worker thread
    touches it at a time. A call cancelled while its worker is still running
    leaves that worker owning the socket; the connection is then dropped and
    later calls fail fast.
    """

    def __init__(self, client: Client) -> None:
        self._client = client
        self._lock = asyncio.Lock()
        self._worker: asyncio.Future[Any] | None = None
        self._broken = False
        self._closed = False

    @classmethod
    async def open(cls, target: TargetConfig) -> PymemcacheConnection:
        client = Client(
            (target.host, target.port),
            connect_timeout=target.timeout_sec,
            timeout=target.timeout_sec,
            no_delay=True,
        )
        conn = cls(client)
        # pymemcache connects lazily; force the handshake now
        await conn._call(client.version)
        return conn

    async def get(self, key: str) -> bytes | None:
        return await self._call(self._client.get, key)

    async def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        return bool(
            await self._call(self._client.set, key, encode_value(value), int(ttl), False)
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        worker = self._worker
        if worker is not None and not worker.done():
            # bounded by the client's socket timeout
            await asyncio.wait([worker])
        await asyncio.to_thread(self._client.close)

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            if self._closed:
                raise CacheConnectionError("Connection is closed")
            if self._broken:
                raise CacheConnectionError("Connection dropped after an interrupted request")
            worker = asyncio.ensure_future(asyncio.to_thread(fn, *args))
            worker.add_done_callback(_consume_result)
            self._worker = worker
            try:
                return await asyncio.shield(worker)
            except asyncio.CancelledError:
                if not worker.done():
                    self._broken = True
                raise
            except socket.timeout as exc:
                raise TimeoutError(str(exc)) from exc
            except MemcacheUnexpectedCloseError as exc:
                raise CacheConnectionError("Connection closed by server") from exc
            except (MemcacheClientError, MemcacheServerError) as exc:
                raise CacheServerError(str(exc)) from exc
            except MemcacheError as exc:
                raise CacheProtocolError(str(exc)) from exc
            except OSError as exc:
                raise CacheConnectionError(str(exc)) from exc


def _consume_result(worker: asyncio.Future[Any]) -> None:
    # an abandoned worker's error is never awaited
    if not worker.cancelled():
        worker.exception()
