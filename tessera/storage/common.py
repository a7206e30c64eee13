"""Common storage contract and helpers shared between memory and postgres implementations.

Both backends expose the same generic table interface: rows are plain dicts and
filters are equality predicates over named fields.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from tessera.storage.models import (
    ACCOUNT_TABLE,
    BINDING_TABLE,
    TOKEN_TABLE,
    TableSchema,
)

Row = Dict[str, Any]
Filter = Mapping[str, Any]

CORE_TABLES: tuple[TableSchema, ...] = (ACCOUNT_TABLE, BINDING_TABLE, TOKEN_TABLE)


class Store(Protocol):
    async def extend(
        self,
        table: str,
        fields: Dict[str, str],
        *,
        primary: Sequence[str] = ("id",),
        auto_inc: bool = False,
        unique: Sequence[Sequence[str]] = (),
    ) -> None: ...

    async def get(
        self, table: str, filter: Filter, fields: Optional[Sequence[str]] = None
    ) -> List[Row]: ...

    async def create(self, table: str, row: Row) -> Row: ...

    async def set(self, table: str, filter: Filter, patch: Row) -> int: ...

    async def remove(self, table: str, filter: Filter) -> int: ...

    async def upsert(self, table: str, rows: Iterable[Row]) -> None: ...


async def extend_core_schema(store: Store) -> None:
    """Declare the account, binding and token tables on ``store``."""

    for schema in CORE_TABLES:
        await store.extend(
            schema.name,
            schema.fields,
            primary=schema.primary,
            auto_inc=schema.auto_inc,
            unique=schema.unique,
        )


def matches(row: Row, filter: Filter) -> bool:
    return all(row.get(key) == value for key, value in filter.items())


def project(row: Row, fields: Optional[Sequence[str]]) -> Row:
    if not fields:
        return dict(row)
    return {name: row.get(name) for name in fields}


def unknown_fields(schema: TableSchema, names: Iterable[str]) -> List[str]:
    return [name for name in names if name not in schema.fields]
