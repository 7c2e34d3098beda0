"""
Row store — the generic table client every function talks to.

Backends implement :class:`~pilot_functions.store.base.RowStoreBase`;
:func:`get_store` returns the one selected by ``settings.row_store``.
"""

from __future__ import annotations

from functools import lru_cache

from pilot_functions.config import settings
from pilot_functions.store.base import RowStoreBase


@lru_cache(maxsize=1)
def get_store() -> RowStoreBase:
    """Return the process-wide row store."""
    if settings.row_store == "memory":
        from pilot_functions.store.memory_store import InMemoryRowStore

        return InMemoryRowStore()

    from pilot_functions.store.rest_store import RestRowStore

    return RestRowStore()
