from __future__ import annotations

from mcload.config import DriverVariant, RunConfig
from mcload.loadgen.connection import Connection
from mcload.loadgen.driver import PymemcacheConnection
from mcload.loadgen.native import NativeConnection


async def open_connection(config: RunConfig) -> Connection:
    if config.driver is DriverVariant.NATIVE:
        return await NativeConnection.open(config.target)
    if config.driver is DriverVariant.PYMEMCACHE:
        return await PymemcacheConnection.open(config.target)
    msg = f"Unsupported driver: {config.driver}"
    raise ValueError(msg)
