from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Protocol

from mcload.config import RunConfig
from mcload.metrics import ErrorType


class CacheError(Exception):
    pass


class CacheConnectionError(CacheError):
    pass


class CacheServerError(CacheError):
    pass


class CacheProtocolError(CacheError):
    pass


class Connection(Protocol):
    """One logical connection with at most one outstanding request."""

    async def get(self, key: str) -> bytes | None:
        ...

    async def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        ...

    async def close(self) -> None:
        ...


ConnectFn = Callable[[RunConfig], Awaitable[Connection]]


def encode_value(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def classify_error(error: BaseException) -> ErrorType:
    if isinstance(error, TimeoutError):
        return ErrorType.TIMEOUT
    if isinstance(error, (CacheConnectionError, ConnectionError)):
        return ErrorType.CONNECT
    if isinstance(error, CacheServerError):
        return ErrorType.SERVER
    if isinstance(error, CacheProtocolError):
        return ErrorType.PROTOCOL
    return ErrorType.OTHER
