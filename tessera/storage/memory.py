from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tessera.logging import get_logger
from tessera.storage.common import Filter, Row, matches, project, unknown_fields
from tessera.storage.errors import ConstraintViolation, SchemaError
from tessera.storage.models import TableSchema


class MemoryStore:
    """In-memory table store with optional JSON persistence under ``fs_root``."""

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.schemas: Dict[str, TableSchema] = {}
        self.tables: Dict[str, List[Row]] = {}
        self._seq: Dict[str, int] = {}
        # RLock so persistence can run inside an already-locked mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _schema(self, table: str) -> TableSchema:
        schema = self.schemas.get(table)
        if schema is None:
            raise SchemaError(table, "table has not been declared")
        return schema

    # schema
    async def extend(
        self,
        table: str,
        fields: Dict[str, str],
        *,
        primary: Sequence[str] = ("id",),
        auto_inc: bool = False,
        unique: Sequence[Sequence[str]] = (),
    ) -> None:
        unique_keys = tuple(tuple(key) for key in unique)
        with self._data_lock:
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
            if schema.auto_inc and len(schema.primary) != 1:
                raise SchemaError(table, "auto increment requires a single primary key")
            self.schemas[table] = schema
            self.tables.setdefault(table, [])
            self._seq.setdefault(table, 0)
            self._persist_state()
        self.logger.debug("memory_table_extended", table=table, fields=sorted(schema.fields))

    # rows
    async def get(
        self, table: str, filter: Filter, fields: Optional[Sequence[str]] = None
    ) -> List[Row]:
        with self._data_lock:
            self._schema(table)
            return [project(row, fields) for row in self.tables[table] if matches(row, filter)]

    async def create(self, table: str, row: Row) -> Row:
        with self._data_lock:
            schema = self._schema(table)
            return self._insert(schema, row)

    async def set(self, table: str, filter: Filter, patch: Row) -> int:
        with self._data_lock:
            schema = self._schema(table)
            self._check_fields(schema, patch)
            targets = [row for row in self.tables[table] if matches(row, filter)]
            if not targets:
                return 0
            for row in targets:
                candidate = {**row, **patch}
                self._check_constraints(schema, candidate, ignore=row)
            for row in targets:
                row.update(patch)
            self._persist_state()
            return len(targets)

    async def remove(self, table: str, filter: Filter) -> int:
        with self._data_lock:
            self._schema(table)
            rows = self.tables[table]
            kept = [row for row in rows if not matches(row, filter)]
            removed = len(rows) - len(kept)
            if removed:
                self.tables[table] = kept
                self._persist_state()
            return removed

    async def upsert(self, table: str, rows: Iterable[Row]) -> None:
        with self._data_lock:
            schema = self._schema(table)
            for incoming in rows:
                missing = [key for key in schema.primary if incoming.get(key) is None]
                if missing:
                    raise ConstraintViolation(
                        "upsert requires primary key values", {"table": table, "fields": missing}
                    )
                key_filter = {key: incoming[key] for key in schema.primary}
                existing = next(
                    (row for row in self.tables[table] if matches(row, key_filter)), None
                )
                if existing is None:
                    self._insert(schema, incoming)
                    continue
                self._check_fields(schema, incoming)
                self._check_constraints(schema, {**existing, **incoming}, ignore=existing)
                existing.update(incoming)
            self._persist_state()

    def _insert(self, schema: TableSchema, row: Row) -> Row:
        self._check_fields(schema, row)
        record = {name: row.get(name) for name in schema.fields}
        if schema.auto_inc:
            key = schema.primary[0]
            if record.get(key) is None:
                record[key] = self._seq[schema.name] + 1
            self._seq[schema.name] = max(self._seq[schema.name], int(record[key]))
        self._check_constraints(schema, record)
        self.tables[schema.name].append(record)
        self._persist_state()
        return dict(record)

    def _check_fields(self, schema: TableSchema, row: Row) -> None:
        extra = unknown_fields(schema, row.keys())
        if extra:
            raise SchemaError(schema.name, f"unknown fields: {extra}")

    def _check_constraints(
        self, schema: TableSchema, candidate: Row, *, ignore: Optional[Row] = None
    ) -> None:
        for key in (schema.primary, *schema.unique):
            values = {name: candidate.get(name) for name in key}
            if any(value is None for value in values.values()):
                continue
            for row in self.tables[schema.name]:
                if row is ignore:
                    continue
                if matches(row, values):
                    raise ConstraintViolation(
                        f"{schema.name} {', '.join(key)} already exists",
                        {"table": schema.name, "fields": list(key)},
                    )

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "schemas": [
                {
                    "name": schema.name,
                    "fields": schema.fields,
                    "primary": list(schema.primary),
                    "auto_inc": schema.auto_inc,
                    "unique": [list(key) for key in schema.unique],
                }
                for schema in self.schemas.values()
            ],
            "tables": {
                name: [self._serialize_row(self.schemas[name], row) for row in rows]
                for name, rows in self.tables.items()
            },
            "sequences": self._seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("schemas", []):
            schema = TableSchema(
                name=raw["name"],
                fields=dict(raw["fields"]),
                primary=tuple(raw.get("primary", ["id"])),
                auto_inc=bool(raw.get("auto_inc", False)),
                unique=tuple(tuple(key) for key in raw.get("unique", [])),
            )
            self.schemas[schema.name] = schema
        for name, rows in data.get("tables", {}).items():
            schema = self.schemas.get(name)
            if schema is None:
                continue
            self.tables[name] = [self._deserialize_row(schema, row) for row in rows]
        self._seq = {name: int(value) for name, value in data.get("sequences", {}).items()}
        for name in self.schemas:
            self.tables.setdefault(name, [])
            self._seq.setdefault(name, 0)
        return True

    @staticmethod
    def _serialize_row(schema: TableSchema, row: Row) -> Dict[str, Any]:
        return {
            name: value.isoformat() if isinstance(value, datetime) else value
            for name, value in row.items()
        }

    @staticmethod
    def _deserialize_row(schema: TableSchema, data: Dict[str, Any]) -> Row:
        row: Row = {}
        for name in schema.fields:
            value = data.get(name)
            if schema.fields[name] == "timestamp" and isinstance(value, str):
                value = datetime.fromisoformat(value)
            row[name] = value
        return row
