from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

VERSION = "mcload-1.0"

# relative TTLs above this are absolute unix timestamps, as in memcached
MAX_RELATIVE_TTL = 60 * 60 * 24 * 30


@dataclass(slots=True)
class Entry:
    value: bytes
    flags: int
    expires_at: float | None


class CacheServer:
    """Throwaway in-memory server speaking the memcached text protocol.

    Supports ``get``/``gets`` (multi-key), ``set``, ``delete``, ``version`` and
    ``quit``; enough to exercise the load test end to end.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self._port = port
        self._data: dict[str, Entry] = {}
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._stopping = False

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        self._stopping = False
        self._server = await asyncio.start_server(self._handle, self.host, self._port)
        logger.info("Cache server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._stopping = True
        self._server.close()
        for writer in list(self._clients):
            writer.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Cache server stopped")

    async def __aenter__(self) -> CacheServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._clients.add(writer)
        try:
            while not self._stopping:
                line = await reader.readline()
                if not line:
                    break
                parts = line.strip().split()
                if not parts:
                    writer.write(b"ERROR\r\n")
                    continue
                command = parts[0].lower()
                if command == b"quit":
                    break
                try:
                    await self._dispatch(command, parts[1:], reader, writer)
                except UnicodeDecodeError:
                    writer.write(b"CLIENT_ERROR key is not valid UTF-8\r\n")
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Client went away: %s", exc)
        finally:
            self._clients.discard(writer)
            writer.close()

    async def _dispatch(
        self,
        command: bytes,
        args: list[bytes],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if command in (b"get", b"gets"):
            await self._get(args, writer)
        elif command == b"set":
            await self._set(args, reader, writer)
        elif command == b"delete":
            self._delete(args, writer)
        elif command == b"version":
            writer.write(f"VERSION {VERSION}\r\n".encode())
        else:
            writer.write(b"ERROR\r\n")

    async def _get(self, keys: list[bytes], writer: asyncio.StreamWriter) -> None:
        if not keys:
            writer.write(b"ERROR\r\n")
            return
        for key in [raw.decode() for raw in keys]:
            entry = self._lookup(key)
            if entry is None:
                continue
            writer.write(f"VALUE {key} {entry.flags} {len(entry.value)}\r\n".encode())
            writer.write(entry.value + b"\r\n")
        writer.write(b"END\r\n")

    async def _set(
        self,
        args: list[bytes],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if len(args) < 4:
            writer.write(b"ERROR\r\n")
            return
        try:
            flags, ttl, size = int(args[1]), int(args[2]), int(args[3])
        except ValueError:
            writer.write(b"CLIENT_ERROR bad command line format\r\n")
            return
        if size < 0:
            writer.write(b"CLIENT_ERROR bad command line format\r\n")
            return
        data = await reader.readexactly(size + 2)
        if not data.endswith(b"\r\n"):
            writer.write(b"CLIENT_ERROR bad data chunk\r\n")
            return
        noreply = len(args) > 4 and args[4] == b"noreply"
        # the data block is already consumed, so a bad key leaves the stream in sync
        self._data[args[0].decode()] = Entry(data[:-2], flags, _expiry(ttl))
        if not noreply:
            writer.write(b"STORED\r\n")

    def _delete(self, args: list[bytes], writer: asyncio.StreamWriter) -> None:
        if not args:
            writer.write(b"ERROR\r\n")
            return
        key = args[0].decode()
        if self._lookup(key) is None:
            writer.write(b"NOT_FOUND\r\n")
            return
        del self._data[key]
        writer.write(b"DELETED\r\n")

    def _lookup(self, key: str) -> Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= time.time():
            del self._data[key]
            return None
        return entry


def _expiry(ttl: int) -> float | None:
    if ttl == 0:
        return None
    if ttl < 0:
        return time.time()
    if ttl > MAX_RELATIVE_TTL:
        return float(ttl)
    return time.time() + ttl
