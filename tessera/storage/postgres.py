from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from tessera.logging import get_logger
from tessera.storage.common import Filter, Row, unknown_fields
from tessera.storage.errors import ConstraintViolation, SchemaError
from tessera.storage.models import TableSchema

_COLUMN_TYPES = {
    "unsigned": "BIGINT",
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "string": "TEXT",
    "timestamp": "TIMESTAMPTZ",
}


def _column_type(kind: str) -> str:
    try:
        return _COLUMN_TYPES[kind]
    except KeyError:
        raise ValueError(f"unsupported column type: {kind}") from None


def _where(filter: Filter) -> sql.Composable:
    if not filter:
        return sql.SQL("")
    clauses = [
        sql.SQL("{} IS NOT DISTINCT FROM {}").format(sql.Identifier(name), sql.Placeholder())
        for name in filter
    ]
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)


class PostgresStore:
    """Postgres-backed table store on an async psycopg connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.schemas: Dict[str, TableSchema] = {}
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    def _schema(self, table: str) -> TableSchema:
        schema = self.schemas.get(table)
        if schema is None:
            raise SchemaError(table, "table has not been declared")
        return schema

    async def extend(
        self,
        table: str,
        fields: Dict[str, str],
        *,
        primary: Sequence[str] = ("id",),
        auto_inc: bool = False,
        unique: Sequence[Sequence[str]] = (),
    ) -> None:
        """Create ``table`` if missing and add any columns it does not have yet."""

        unique_keys = tuple(tuple(key) for key in unique)
        existing = self.schemas.get(table)
        if existing is None:
            schema = TableSchema(
                name=table,
                fields=dict(fields),
                primary=tuple(primary),
                auto_inc=auto_inc,
                unique=unique_keys,
            )
        else:
            schema = existing.merge(fields, unique=unique_keys)
        missing = unknown_fields(schema, schema.primary)
        if missing:
            raise SchemaError(table, f"primary key fields not declared: {missing}")

        statements = [self._create_table_sql(schema)]
        for name, kind in schema.fields.items():
            if name in schema.primary:
                continue
            statements.append(
                sql.SQL("ALTER TABLE {} ADD COLUMN IF NOT EXISTS {} {}").format(
                    sql.Identifier(table), sql.Identifier(name), sql.SQL(_column_type(kind))
                )
            )
        for key in schema.unique:
            statements.append(
                sql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} ({})").format(
                    sql.Identifier(f"{table}_{'_'.join(key)}_key"),
                    sql.Identifier(table),
                    sql.SQL(", ").join(map(sql.Identifier, key)),
                )
            )
        try:
            async with self._connect() as conn:
                for statement in statements:
                    await conn.execute(statement)
        except psycopg.Error as exc:
            self.logger.error("postgres_extend_failed", table=table, error=str(exc))
            raise SchemaError(table, str(exc)) from exc
        self.schemas[table] = schema
        self.logger.info("postgres_table_extended", table=table, fields=sorted(schema.fields))

    def _create_table_sql(self, schema: TableSchema) -> sql.Composed:
        columns = []
        for name in schema.primary:
            kind = sql.SQL(_column_type(schema.fields[name]))
            if schema.auto_inc:
                kind = kind + sql.SQL(" GENERATED BY DEFAULT AS IDENTITY")
            columns.append(sql.SQL("{} {} NOT NULL").format(sql.Identifier(name), kind))
        columns.append(
            sql.SQL("PRIMARY KEY ({})").format(
                sql.SQL(", ").join(map(sql.Identifier, schema.primary))
            )
        )
        return sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
            sql.Identifier(schema.name), sql.SQL(", ").join(columns)
        )

    async def get(
        self, table: str, filter: Filter, fields: Optional[Sequence[str]] = None
    ) -> List[Row]:
        self._schema(table)
        columns = (
            sql.SQL(", ").join(map(sql.Identifier, fields)) if fields else sql.SQL("*")
        )
        query = sql.SQL("SELECT {} FROM {}").format(columns, sql.Identifier(table))
        query = query + _where(filter)
        async with self._connect() as conn:
            cur = await conn.execute(query, list(filter.values()))
            return list(await cur.fetchall())

    async def create(self, table: str, row: Row) -> Row:
        schema = self._schema(table)
        values = {name: value for name, value in row.items() if value is not None}
        extra = unknown_fields(schema, values)
        if extra:
            raise SchemaError(table, f"unknown fields: {extra}")
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, values)),
            sql.SQL(", ").join(sql.Placeholder() * len(values)),
        )
        try:
            async with self._connect() as conn:
                cur = await conn.execute(query, list(values.values()))
                created = await cur.fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{table} row already exists", {"table": table, "error": str(exc)}
            ) from exc
        return dict(created)

    async def set(self, table: str, filter: Filter, patch: Row) -> int:
        schema = self._schema(table)
        if not patch:
            return 0
        extra = unknown_fields(schema, patch)
        if extra:
            raise SchemaError(table, f"unknown fields: {extra}")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder())
            for name in patch
        )
        query = sql.SQL("UPDATE {} SET {}").format(sql.Identifier(table), assignments)
        query = query + _where(filter)
        try:
            async with self._connect() as conn:
                cur = await conn.execute(query, [*patch.values(), *filter.values()])
                return cur.rowcount
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{table} update violates a unique key", {"table": table, "error": str(exc)}
            ) from exc

    async def remove(self, table: str, filter: Filter) -> int:
        self._schema(table)
        query = sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + _where(filter)
        async with self._connect() as conn:
            cur = await conn.execute(query, list(filter.values()))
            return cur.rowcount

    async def upsert(self, table: str, rows: Iterable[Row]) -> None:
        schema = self._schema(table)
        async with self._connect() as conn:
            for row in rows:
                extra = unknown_fields(schema, row)
                if extra:
                    raise SchemaError(table, f"unknown fields: {extra}")
                updates = [name for name in row if name not in schema.primary]
                if updates:
                    action = sql.SQL("DO UPDATE SET ") + sql.SQL(", ").join(
                        sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(name))
                        for name in updates
                    )
                else:
                    action = sql.SQL("DO NOTHING")
                query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) {}").format(
                    sql.Identifier(table),
                    sql.SQL(", ").join(map(sql.Identifier, row)),
                    sql.SQL(", ").join(sql.Placeholder() * len(row)),
                    sql.SQL(", ").join(map(sql.Identifier, schema.primary)),
                    action,
                )
                await conn.execute(query, list(row.values()))
