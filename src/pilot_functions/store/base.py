"""Abstract base class for row-store backends.

The functions only need a thin table client: filtered select/count,
insert, update, delete, upsert and stored-procedure calls.  Adding a new
backend only requires subclassing :class:`RowStoreBase` and implementing
the abstract methods; everything above this layer is backend-agnostic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pilot_functions.store.models import Filter

Row = dict[str, Any]


class RowStoreBase(ABC):
    """Backend-agnostic table client."""

    # -- required overrides ---------------------------------------------------

    @abstractmethod
    def select(
        self,
        table: str,
        filters: list[Filter] | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        """Return rows of *table* matching every filter.

        Parameters
        ----------
        table:
            Table name.
        filters:
            Conjunction of :class:`Filter` clauses.
        columns:
            Comma-separated projection (``"*"`` for all columns).
        order:
            ``"<column>"`` or ``"<column>.desc"``.
        limit:
            Maximum number of rows.
        """
        ...

    @abstractmethod
    def count(self, table: str, filters: list[Filter] | None = None) -> int:
        """Exact number of rows matching *filters*."""
        ...

    @abstractmethod
    def insert(self, table: str, rows: Row | list[Row]) -> list[Row]:
        """Insert one or many rows and return them as stored."""
        ...

    @abstractmethod
    def update(self, table: str, values: Row, filters: list[Filter]) -> list[Row]:
        """Apply *values* to matching rows and return the updated rows."""
        ...

    @abstractmethod
    def delete(self, table: str, filters: list[Filter]) -> int:
        """Delete matching rows and return how many were removed."""
        ...

    @abstractmethod
    def upsert(self, table: str, rows: Row | list[Row], *, on_conflict: str = "id") -> list[Row]:
        """Insert or merge rows keyed by the *on_conflict* column(s)."""
        ...

    @abstractmethod
    def rpc(self, name: str, params: dict[str, Any]) -> Any:
        """Call a stored procedure."""
        ...

    @abstractmethod
    def health_check(self) -> bool:
        """Return ``True`` when the backend is reachable."""
        ...

    # -- conveniences ---------------------------------------------------------

    def first(self, table: str, filters: list[Filter] | None = None, *, columns: str = "*") -> Row | None:
        rows = self.select(table, filters, columns=columns, limit=1)
        return rows[0] if rows else None

    def get(self, table: str, row_id: str, *, columns: str = "*") -> Row | None:
        return self.first(table, [Filter.equals("id", row_id)], columns=columns)

    def update_by_id(self, table: str, row_id: str, values: Row) -> Row | None:
        rows = self.update(table, values, [Filter.equals("id", row_id)])
        return rows[0] if rows else None
