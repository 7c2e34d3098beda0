"""In-process implementation of the row-store abstraction.

Used for local development and by the test-suite.  Semantics follow the
managed backend closely enough for the pipeline: generated ``id``,
``created_at`` / ``updated_at`` bookkeeping, JSON containment filters
and the ``search_knowledge_chunks`` similarity procedure.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
import uuid
from datetime import datetime
from typing import Any, Callable

from pilot_functions.errors import RowStoreError
from pilot_functions.store.base import Row, RowStoreBase
from pilot_functions.store.models import Filter, utcnow_iso

logger = logging.getLogger(__name__)


def _resolve(row: Row, field: str) -> Any:
    """Read a column, following ``a->b`` JSON paths."""
    parts = field.split("->")
    value: Any = row.get(parts[0])
    for part in parts[1:]:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _contains(container: Any, subset: Any) -> bool:
    if isinstance(subset, dict):
        if not isinstance(container, dict):
            return False
        return all(k in container and _contains(container[k], v) for k, v in subset.items())
    if isinstance(subset, list):
        if not isinstance(container, list):
            return False
        return all(any(_contains(c, s) for c in container) for s in subset)
    return container == subset


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(left: Any, right: Any) -> bool:
        if left is None:
            return False
        try:
            return op(_comparable(left), _comparable(right))
        except TypeError:
            return False

    return check


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda left, right: left == right,
    "neq": lambda left, right: left is not None and left != right,
    "gt": _compare(lambda a, b: a > b),
    "gte": _compare(lambda a, b: a >= b),
    "lt": _compare(lambda a, b: a < b),
    "lte": _compare(lambda a, b: a <= b),
    "in": lambda left, right: left in (right or []),
    "is_null": lambda left, _right: left is None,
    "not_null": lambda left, _right: left is not None,
    "contains": _contains,
}


def _matches(row: Row, filters: list[Filter] | None) -> bool:
    for f in filters or []:
        check = _OPERATORS.get(f.operator)
        if check is None:
            raise ValueError(f"Unsupported filter operator: {f.operator!r}")
        if not check(_resolve(row, f.field), f.value):
            return False
    return True


def _project(row: Row, columns: str) -> Row:
    if columns.strip() == "*":
        return copy.deepcopy(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: copy.deepcopy(row.get(c)) for c in wanted}


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryRowStore(RowStoreBase):
    """Dict-of-tables row store.

    Parameters
    ----------
    clock:
        Returns the ISO timestamp stamped into ``created_at`` /
        ``updated_at``.  Overridable so tests can age rows.
    """

    def __init__(self, clock: Callable[[], str] = utcnow_iso) -> None:
        self.tables: dict[str, list[Row]] = {}
        self._clock = clock
        self._lock = threading.RLock()

    # -- RowStoreBase overrides -----------------------------------------------

    def select(
        self,
        table: str,
        filters: list[Filter] | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        with self._lock:
            rows = [r for r in self.tables.get(table, []) if _matches(r, filters)]
            if order:
                column, _, direction = order.partition(".")
                rows.sort(
                    key=lambda r: (r.get(column) is None, _comparable(r.get(column))),
                    reverse=direction == "desc",
                )
            if limit is not None:
                rows = rows[:limit]
            return [_project(r, columns) for r in rows]

    def count(self, table: str, filters: list[Filter] | None = None) -> int:
        with self._lock:
            return sum(1 for r in self.tables.get(table, []) if _matches(r, filters))

    def insert(self, table: str, rows: Row | list[Row]) -> list[Row]:
        batch = [rows] if isinstance(rows, dict) else list(rows)
        stored: list[Row] = []
        with self._lock:
            target = self.tables.setdefault(table, [])
            for row in batch:
                now = self._clock()
                record = {"id": uuid.uuid4().hex, "created_at": now, "updated_at": now}
                record.update(copy.deepcopy(row))
                if any(r["id"] == record["id"] for r in target):
                    raise RowStoreError(f"duplicate key value violates unique constraint on {table}.id")
                target.append(record)
                stored.append(copy.deepcopy(record))
        return stored

    def update(self, table: str, values: Row, filters: list[Filter]) -> list[Row]:
        updated: list[Row] = []
        with self._lock:
            for row in self.tables.get(table, []):
                if _matches(row, filters):
                    row.update(copy.deepcopy(values))
                    if "updated_at" not in values:
                        row["updated_at"] = self._clock()
                    updated.append(copy.deepcopy(row))
        return updated

    def delete(self, table: str, filters: list[Filter]) -> int:
        with self._lock:
            rows = self.tables.get(table, [])
            keep = [r for r in rows if not _matches(r, filters)]
            self.tables[table] = keep
            return len(rows) - len(keep)

    def upsert(self, table: str, rows: Row | list[Row], *, on_conflict: str = "id") -> list[Row]:
        keys = [k.strip() for k in on_conflict.split(",")]
        batch = [rows] if isinstance(rows, dict) else list(rows)
        stored: list[Row] = []
        with self._lock:
            for row in batch:
                filters = [Filter.equals(k, row.get(k)) for k in keys]
                existing = self.update(table, row, filters) if all(row.get(k) is not None for k in keys) else []
                stored.extend(existing or self.insert(table, row))
        return stored

    def rpc(self, name: str, params: dict[str, Any]) -> Any:
        if name == "search_knowledge_chunks":
            return self._search_knowledge_chunks(**params)
        if name == "log_security_event":
            return self._log_security_event(**params)
        raise RowStoreError(f"Could not find the function public.{name}")

    def health_check(self) -> bool:
        return True

    # -- stored procedures ----------------------------------------------------

    def _log_security_event(self, p_user_id: str, p_action: str, **details: Any) -> None:
        self.insert("security_logs", {"user_id": p_user_id, "action": p_action, **{k[2:]: v for k, v in details.items()}})

    def _search_knowledge_chunks(
        self,
        p_agent_id: str,
        p_query_embedding: list[float],
        p_match_threshold: float = 0.7,
        p_match_count: int = 5,
    ) -> list[Row]:
        sources = {s["id"]: s for s in self.select("knowledge_sources")}
        hits: list[Row] = []
        for chunk in self.select("knowledge_chunks", [Filter.equals("agent_id", p_agent_id)]):
            similarity = _cosine(p_query_embedding, chunk.get("embedding") or [])
            if similarity < p_match_threshold:
                continue
            source = sources.get(chunk["source_id"], {})
            hits.append(
                {
                    "id": chunk["id"],
                    "source_id": chunk["source_id"],
                    "content": chunk["content"],
                    "chunk_index": chunk["chunk_index"],
                    "similarity": similarity,
                    "source_name": source.get("source", ""),
                    "source_type": source.get("type", ""),
                }
            )
        hits.sort(key=lambda h: h["similarity"], reverse=True)
        return hits[:p_match_count]
