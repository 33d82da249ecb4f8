"""Contracts for the services the health subsystem probes and remediates."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class QueryClient(Protocol):
    """Persistent store reachable through plain SQL."""

    async def query(self, sql: str) -> Any: ...


@runtime_checkable
class CacheClient(Protocol):
    """Cache / pub-sub layer."""

    async def set(self, key: str, value: str, ttl: int) -> Any: ...

    async def get(self, key: str) -> Any: ...

    async def delete(self, key: str) -> Any: ...

    async def info(self) -> str: ...


@runtime_checkable
class Reconnectable(Protocol):
    """A client whose underlying connection (pool) can be re-established."""

    async def reconnect(self) -> bool: ...
