"""
Store contract consumed by the identity context and the provisioning service.

Rows travel as plain dicts keyed by column name. Filters map a column to a
value (equality) or to a list/tuple/set of values (membership).
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

Filters = Mapping[str, Any]


@runtime_checkable
class Store(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        columns: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def delete(self, table: str, filters: Filters) -> int: ...


@runtime_checkable
class TransactionalStore(Store, Protocol):
    """A store whose writes inside atomic() commit together or not at all."""

    def atomic(self) -> AbstractAsyncContextManager[None]: ...


def is_multi_value(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def project(row: Mapping[str, Any], columns: Iterable[str] | None) -> dict[str, Any]:
    if columns is None:
        return dict(row)
    return {c: row.get(c) for c in columns}
