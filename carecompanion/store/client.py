"""
carecompanion/store/client.py — Table store clients.

Two interchangeable back-ends expose the same small CRUD surface
(``select`` / ``insert`` / ``update``):

- :class:`SupabaseClient` talks to a Supabase project's PostgREST API over
  :mod:`requests`.
- :class:`InMemoryTableStore` keeps rows in process memory, for the
  simulator and tests.

Filters are equality-only ``{column: value}`` mappings; that is all the
companion needs.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence

import requests

from carecompanion.core.config import DataStoreConfig
from carecompanion.core.http import build_session

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class DataStoreError(RuntimeError):
    """A data store request failed."""


class TableStore(Protocol):
    """CRUD surface shared by every store back-end."""

    def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
    ) -> list[Row]: ...

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]: ...

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[Row]: ...


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
# Supabase (PostgREST)
# ──────────────────────────────────────────────────────────────

class SupabaseClient:
    """
    Minimal PostgREST client for a Supabase project.

    Args:
        url: Project URL, e.g. ``https://abc.supabase.co``.
        api_key: Anon (or service) key, sent as ``apikey`` and bearer token.
        timeout_s: Per-request timeout.
        session: Optional pre-built HTTP session (tests inject a mock).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout_s: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url or not api_key:
            raise DataStoreError("Supabase URL and key are required")
        self._base = f"{url.rstrip('/')}/rest/v1"
        self._timeout = timeout_s
        self._session = session or build_session(max_retries=2)
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    @classmethod
    def from_config(cls, config: DataStoreConfig) -> "SupabaseClient":
        """
        Build a client from environment-backed config.

        Raises:
            DataStoreError: If the URL or key environment variable is unset.
        """
        if not config.url or not config.api_key:
            raise DataStoreError(
                f"Set {config.url_env} and {config.key_env} to use the Supabase backend"
            )
        return cls(config.url, config.api_key, timeout_s=config.timeout_s)

    @staticmethod
    def _params(filters: Optional[Mapping[str, Any]]) -> dict[str, str]:
        params: dict[str, str] = {}
        for column, value in (filters or {}).items():
            if isinstance(value, bool):
                value = str(value).lower()
            params[column] = f"eq.{value}"
        return params

    def _request(self, method: str, table: str, **kwargs: Any) -> list[Row]:
        try:
            resp = self._session.request(
                method,
                f"{self._base}/{table}",
                headers=self._headers,
                timeout=self._timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise DataStoreError(f"{method} {table} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DataStoreError(
                f"{method} {table} → HTTP {resp.status_code}: {resp.text[:200]}"
            )
        if not resp.content:
            return []
        try:
            body = resp.json()
        except ValueError as exc:
            raise DataStoreError(f"{method} {table}: invalid JSON response") from exc
        return body if isinstance(body, list) else [body]

    def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
    ) -> list[Row]:
        params = {"select": "*", **self._params(filters)}
        if order:
            params["order"] = f"{order}.asc"
        return self._request("GET", table, params=params)

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        if not rows:
            return []
        return self._request("POST", table, json=[dict(r) for r in rows])

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[Row]:
        if not filters:
            raise DataStoreError("update without filters is refused")
        return self._request("PATCH", table, params=self._params(filters), json=dict(values))


# ──────────────────────────────────────────────────────────────
# In-memory
# ──────────────────────────────────────────────────────────────

class InMemoryTableStore:
    """
    Thread-safe in-process table store with the :class:`TableStore` surface.

    Inserted rows receive an ``id`` (uuid4 hex) and ``created_at`` when they
    do not carry one. Returned rows are copies.

    Args:
        seed: Optional initial rows per table.
    """

    def __init__(self, seed: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None) -> None:
        self._lock = threading.Lock()
        self._tables: dict[str, list[Row]] = {}
        for table, rows in (seed or {}).items():
            self.insert(table, rows)

    @staticmethod
    def _match(row: Row, filters: Optional[Mapping[str, Any]]) -> bool:
        return all(row.get(k) == v for k, v in (filters or {}).items())

    def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
    ) -> list[Row]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._tables.get(table, []) if self._match(r, filters)]
        if order:
            rows.sort(key=lambda r: (r.get(order) is None, r.get(order)))
        return rows

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        created: list[Row] = []
        with self._lock:
            bucket = self._tables.setdefault(table, [])
            for row in rows:
                record = dict(row)
                record.setdefault("id", uuid.uuid4().hex)
                record.setdefault("created_at", _now_iso())
                bucket.append(record)
                created.append(copy.deepcopy(record))
        return created

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[Row]:
        if not filters:
            raise DataStoreError("update without filters is refused")
        changed: list[Row] = []
        with self._lock:
            for row in self._tables.get(table, []):
                if self._match(row, filters):
                    row.update(values)
                    changed.append(copy.deepcopy(row))
        return changed


def create_store(config: DataStoreConfig) -> TableStore:
    """
    Build the configured store back-end.

    Raises:
        DataStoreError: If the Supabase back-end is selected but not configured.
    """
    if config.backend == "supabase":
        logger.info("Using Supabase data store")
        return SupabaseClient.from_config(config)
    logger.info("Using in-memory data store")
    return InMemoryTableStore()
