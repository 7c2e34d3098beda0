"""PostgREST implementation of the row-store abstraction."""

from __future__ import annotations

import json
import logging
from typing import Any

import requests

from pilot_functions.config import settings
from pilot_functions.errors import RowStoreError
from pilot_functions.store.base import Row, RowStoreBase
from pilot_functions.store.models import Filter

logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _build_params(filters: list[Filter] | None) -> list[tuple[str, str]]:
    """Convert a list of :class:`Filter` to PostgREST query parameters."""
    _OP_MAP = {
        "eq": "eq",
        "neq": "neq",
        "gt": "gt",
        "gte": "gte",
        "lt": "lt",
        "lte": "lte",
    }

    params: list[tuple[str, str]] = []
    for f in filters or []:
        if f.operator in _OP_MAP:
            params.append((f.field, f"{_OP_MAP[f.operator]}.{_format_value(f.value)}"))
        elif f.operator == "in":
            joined = ",".join(json.dumps(v) if isinstance(v, str) else _format_value(v) for v in f.value)
            params.append((f.field, f"in.({joined})"))
        elif f.operator == "is_null":
            params.append((f.field, "is.null"))
        elif f.operator == "not_null":
            params.append((f.field, "not.is.null"))
        elif f.operator == "contains":
            params.append((f.field, f"cs.{json.dumps(f.value, separators=(',', ':'))}"))
        else:
            raise ValueError(f"Unsupported filter operator: {f.operator!r}")
    return params


class RestRowStore(RowStoreBase):
    """Row store backed by the managed backend's PostgREST gateway.

    Parameters
    ----------
    base_url:
        Project URL; tables live under ``/rest/v1``.
    service_key:
        Service-role key sent as both ``apikey`` and bearer token.
    session:
        Optional pre-configured ``requests.Session`` (tests inject a mock).
    """

    def __init__(
        self,
        base_url: str = settings.supabase_url,
        service_key: str = settings.supabase_service_role_key,
        *,
        session: requests.Session | None = None,
        timeout: int = settings.request_timeout,
    ) -> None:
        if not base_url or not service_key:
            raise RowStoreError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be configured")
        self._rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            }
        )

    # -- plumbing -------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        body: Any = None,
        prefer: str | None = None,
    ) -> requests.Response:
        headers = {"Prefer": prefer} if prefer else {}
        try:
            resp = self._session.request(
                method,
                f"{self._rest_url}/{path}",
                params=params,
                json=body,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise RowStoreError(f"Row store request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise RowStoreError(f"Row store returned {resp.status_code} for {method} {path}: {resp.text}")
        return resp

    @staticmethod
    def _rows(resp: requests.Response) -> list[Row]:
        if not resp.content:
            return []
        data = resp.json()
        return data if isinstance(data, list) else [data]

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
        params = [("select", columns), *_build_params(filters)]
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        return self._rows(self._request("GET", table, params=params))

    def count(self, table: str, filters: list[Filter] | None = None) -> int:
        params = [("select", "id"), *_build_params(filters)]
        resp = self._request("HEAD", table, params=params, prefer="count=exact")
        content_range = resp.headers.get("Content-Range", "*/0")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    def insert(self, table: str, rows: Row | list[Row]) -> list[Row]:
        body = [rows] if isinstance(rows, dict) else list(rows)
        if not body:
            return []
        return self._rows(self._request("POST", table, body=body, prefer="return=representation"))

    def update(self, table: str, values: Row, filters: list[Filter]) -> list[Row]:
        if not filters:
            raise ValueError("Refusing to update without filters")
        resp = self._request(
            "PATCH", table, params=_build_params(filters), body=values, prefer="return=representation"
        )
        return self._rows(resp)

    def delete(self, table: str, filters: list[Filter]) -> int:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        resp = self._request("DELETE", table, params=_build_params(filters), prefer="return=representation")
        return len(self._rows(resp))

    def upsert(self, table: str, rows: Row | list[Row], *, on_conflict: str = "id") -> list[Row]:
        body = [rows] if isinstance(rows, dict) else list(rows)
        resp = self._request(
            "POST",
            table,
            params=[("on_conflict", on_conflict)],
            body=body,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return self._rows(resp)

    def rpc(self, name: str, params: dict[str, Any]) -> Any:
        resp = self._request("POST", f"rpc/{name}", body=params)
        return resp.json() if resp.content else None

    def health_check(self) -> bool:
        try:
            self._request("GET", "", params=[])
            return True
        except RowStoreError:
            logger.warning("Row store health-check failed", exc_info=True)
            return False
