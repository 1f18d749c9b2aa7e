from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from mcload.config import TargetConfig
from mcload.loadgen.connection import (
    CacheConnectionError,
    CacheProtocolError,
    CacheServerError,
    encode_value,
)

logger = logging.getLogger(__name__)

CRLF = b"\r\n"


class NativeConnection:
    """Memcached text protocol client over a single asyncio stream."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._lock = asyncio.Lock()
        self._closed = False
        self._broken = False

    @classmethod
    async def open(cls, target: TargetConfig) -> NativeConnection:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port),
                timeout=target.timeout_sec,
            )
        except OSError as exc:
            msg = f"Could not connect to {target.address}: {exc}"
            raise CacheConnectionError(msg) from exc
        logger.debug("Connected to %s", target.address)
        return cls(reader, writer)

    async def get(self, key: str) -> bytes | None:
        async with self._exchange():
            await self._send(f"get {key}".encode() + CRLF)
            value: bytes | None = None
            while True:
                line = await self._read_line()
                if line == b"END":
                    return value
                parts = line.split()
                if len(parts) < 4 or parts[0] != b"VALUE":
                    self._raise_for(line)
                size = int(parts[3])
                data = await self._read_exactly(size + len(CRLF))
                if not data.endswith(CRLF):
                    msg = f"Bad data block terminator for {key!r}"
                    raise CacheProtocolError(msg)
                value = data[:-len(CRLF)]

    async def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        data = encode_value(value)
        async with self._exchange():
            header = f"set {key} 0 {int(ttl)} {len(data)}".encode()
            await self._send(header + CRLF + data + CRLF)
            line = await self._read_line()
            if line == b"STORED":
                return True
            if line == b"NOT_STORED":
                return False
            self._raise_for(line)

    async def delete(self, key: str) -> bool:
        async with self._exchange():
            await self._send(f"delete {key}".encode() + CRLF)
            line = await self._read_line()
            if line == b"DELETED":
                return True
            if line == b"NOT_FOUND":
                return False
            self._raise_for(line)

    async def version(self) -> str:
        async with self._exchange():
            await self._send(b"version" + CRLF)
            line = await self._read_line()
            if not line.startswith(b"VERSION "):
                self._raise_for(line)
            return line[len(b"VERSION "):].decode()

    @asynccontextmanager
    async def _exchange(self) -> AsyncIterator[None]:
        # a request interrupted midway leaves an unread reply on the stream
        async with self._lock:
            if self._broken:
                raise CacheConnectionError("Connection dropped after an interrupted request")
            try:
                yield
            except CacheServerError:
                raise
            except BaseException:
                self._broken = True
                self._writer.close()
                raise

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as exc:
            logger.debug("Error while closing connection: %s", exc)

    async def _send(self, payload: bytes) -> None:
        if self._closed:
            raise CacheConnectionError("Connection is closed")
        try:
            self._writer.write(payload)
            await self._writer.drain()
        except OSError as exc:
            raise CacheConnectionError(str(exc)) from exc

    async def _read_line(self) -> bytes:
        try:
            line = await self._reader.readuntil(CRLF)
        except asyncio.IncompleteReadError as exc:
            raise CacheConnectionError("Connection closed by server") from exc
        except OSError as exc:
            raise CacheConnectionError(str(exc)) from exc
        return line[:-len(CRLF)]

    async def _read_exactly(self, size: int) -> bytes:
        try:
            return await self._reader.readexactly(size)
        except asyncio.IncompleteReadError as exc:
            raise CacheConnectionError("Connection closed by server") from exc
        except OSError as exc:
            raise CacheConnectionError(str(exc)) from exc

    @staticmethod
    def _raise_for(line: bytes) -> None:
        text = line.decode("utf-8", errors="replace")
        if text == "ERROR" or text.startswith(("CLIENT_ERROR", "SERVER_ERROR")):
            raise CacheServerError(text)
        msg = f"Unexpected response: {text!r}"
        raise CacheProtocolError(msg)
