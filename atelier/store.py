"""
Data Store

Table-like collections behind a small API: select / get / insert / update /
delete. Two backends:

- JsonFileStore: one JSON file per table under ATELIER_DATA_DIR. Local
  development and tests.
- PostgrestStore: the hosted relational service over its REST interface
  (/rest/v1/<table>), authenticated with the service role key.

Rows are plain dicts keyed by "id". Uniqueness rules the workflow depends
on (one pending clearance per task) are passed to insert() as
unique_where and surface as ConflictError.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConflictError, NotFoundError, StoreError

logger = logging.getLogger("store")


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
STORE_BACKEND = os.getenv("ATELIER_STORE_BACKEND", "json")
DATA_DIR = os.getenv("ATELIER_DATA_DIR", "/tmp/atelier/data")
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
HTTP_TIMEOUT = float(os.getenv("ATELIER_HTTP_TIMEOUT", "10.0"))

TABLES = (
    "profiles",
    "projects",
    "tasks",
    "task_status_history",
    "task_clearances",
    "notifications",
    "images",
    "documents",
    "meetings",
    "invoices",
    "invoice_payments",
)


def _matches(row: Dict[str, Any], eq: Optional[Dict[str, Any]], in_: Optional[Dict[str, List[Any]]]) -> bool:
    for key, value in (eq or {}).items():
        if row.get(key) != value:
            return False
    for key, values in (in_ or {}).items():
        if row.get(key) not in values:
            return False
    return True


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------
class DataStore:
    """Interface shared by the backends."""

    def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, List[Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        rows = self.select(table, eq={"id": row_id})
        return rows[0] if rows else None

    def insert(
        self,
        table: str,
        row: Dict[str, Any],
        unique_where: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, table: str, row_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def delete(self, table: str, row_id: str) -> bool:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# JSON File Backend
# -----------------------------------------------------------------------------
class JsonFileStore(DataStore):
    """
    Stores each table as {data_dir}/{table}.json.

    Tables are loaded lazily and kept in memory. Every write rewrites the
    table file through a temp file and rename, under a process-wide lock,
    so check-then-insert for unique_where is atomic within the process.
    """

    def __init__(self, data_dir=None):
        self._data_dir = Path(data_dir or DATA_DIR)
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table_file(self, table: str) -> Path:
        return self._data_dir / f"{table}.json"

    def _load_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table in self._tables:
            return self._tables[table]

        rows: Dict[str, Dict[str, Any]] = {}
        path = self._table_file(table)
        if path.exists():
            try:
                with open(path) as f:
                    data = json.load(f)
                for row in data.get("rows", []):
                    rows[row["id"]] = row
                logger.info(f"Loaded {len(rows)} rows from {table}")
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to load table {table}: {e}")

        self._tables[table] = rows
        return rows

    def _save_table(self, table: str, rows: Dict[str, Dict[str, Any]]) -> None:
        """Write staged rows to disk; the cache only takes them once the write succeeds."""
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            data = {
                "version": "1.0",
                "updated_at": datetime.now(timezone.utc).isoformat(),
                "rows": list(rows.values()),
            }

            # Atomic write
            path = self._table_file(table)
            temp_file = path.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2, default=str)
            temp_file.replace(path)
        except OSError as e:
            logger.error(f"Failed to save table {table}: {e}")
            raise StoreError(
                message=f"Failed to save table {table}",
                details={"table": table, "error": str(e)},
            )
        self._tables[table] = rows

    def select(self, table, eq=None, in_=None, order_by=None, descending=False):
        with self._lock:
            rows = [dict(r) for r in self._load_table(table).values() if _matches(r, eq, in_)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=descending)
        return rows

    def get(self, table, row_id):
        with self._lock:
            row = self._load_table(table).get(row_id)
            return dict(row) if row is not None else None

    def insert(self, table, row, unique_where=None):
        with self._lock:
            rows = self._load_table(table)
            if row["id"] in rows:
                raise ConflictError(
                    message=f"Row '{row['id']}' already exists in {table}",
                    details={"table": table, "id": row["id"]},
                )
            if unique_where and any(_matches(r, unique_where, None) for r in rows.values()):
                raise ConflictError(
                    message=f"A row matching {unique_where} already exists in {table}",
                    details={"table": table, "unique_where": unique_where},
                )
            staged = dict(rows)
            staged[row["id"]] = dict(row)
            self._save_table(table, staged)
            return dict(row)

    def update(self, table, row_id, patch):
        with self._lock:
            rows = self._load_table(table)
            if row_id not in rows:
                raise NotFoundError(table.rstrip("s"), row_id)
            staged = dict(rows)
            staged[row_id] = {**rows[row_id], **patch}
            self._save_table(table, staged)
            return dict(staged[row_id])

    def delete(self, table, row_id):
        with self._lock:
            rows = self._load_table(table)
            if row_id not in rows:
                return False
            staged = dict(rows)
            del staged[row_id]
            self._save_table(table, staged)
            return True


# -----------------------------------------------------------------------------
# PostgREST Backend
# -----------------------------------------------------------------------------
def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


class PostgrestStore(DataStore):
    """
    Hosted relational store over PostgREST.

    The one-pending-clearance rule is also backed by a partial unique
    index (see schema/postgres.sql); a 409 from the service becomes
    ConflictError.
    """

    def __init__(self, base_url: str = None, service_key: str = None, client: httpx.Client = None):
        base_url = (base_url or SUPABASE_URL).rstrip("/")
        service_key = service_key or SUPABASE_SERVICE_ROLE_KEY
        if not base_url or not service_key:
            raise StoreError(
                message="SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for the postgrest backend",
                details={"backend": "postgrest"},
            )
        self._client = client or httpx.Client(timeout=HTTP_TIMEOUT)
        self._base_url = f"{base_url}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _request(self, method: str, table: str, params=None, json_body=None) -> List[Dict[str, Any]]:
        url = f"{self._base_url}/{table}"
        try:
            response = self._client.request(
                method, url, params=params, json=json_body, headers=self._headers
            )
        except httpx.HTTPError as e:
            logger.error(f"{method} {table} failed: {e}")
            raise StoreError(message=f"Store request failed: {e}", details={"table": table})

        if response.status_code == 409:
            raise ConflictError(
                message=f"Uniqueness rule rejected write to {table}",
                details={"table": table, "response": response.text},
            )
        if response.status_code >= 400:
            logger.error(f"{method} {table} returned {response.status_code}: {response.text}")
            raise StoreError(
                message=f"Store returned {response.status_code} for {table}",
                details={"table": table, "status_code": response.status_code, "response": response.text},
            )
        if not response.content:
            return []
        return response.json()

    def select(self, table, eq=None, in_=None, order_by=None, descending=False):
        params: Dict[str, str] = {"select": "*"}
        for key, value in (eq or {}).items():
            params[key] = _filter_value(value)
        for key, values in (in_ or {}).items():
            params[key] = f"in.({','.join(str(v) for v in values)})"
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        return self._request("GET", table, params=params)

    def insert(self, table, row, unique_where=None):
        if unique_where and self.select(table, eq=unique_where):
            raise ConflictError(
                message=f"A row matching {unique_where} already exists in {table}",
                details={"table": table, "unique_where": unique_where},
            )
        rows = self._request("POST", table, json_body=row)
        return rows[0] if rows else dict(row)

    def update(self, table, row_id, patch):
        rows = self._request("PATCH", table, params={"id": f"eq.{row_id}"}, json_body=patch)
        if not rows:
            raise NotFoundError(table.rstrip("s"), row_id)
        return rows[0]

    def delete(self, table, row_id):
        rows = self._request("DELETE", table, params={"id": f"eq.{row_id}"})
        return bool(rows)


# -----------------------------------------------------------------------------
# Singleton
# -----------------------------------------------------------------------------
_store: Optional[DataStore] = None


def get_store() -> DataStore:
    """Get the configured store instance."""
    global _store
    if _store is None:
        if STORE_BACKEND == "postgrest":
            _store = PostgrestStore()
        else:
            _store = JsonFileStore()
        logger.info(f"Using {type(_store).__name__} backend")
    return _store


def set_store(store: Optional[DataStore]) -> None:
    """Replace the store instance (tests, alternate backends)."""
    global _store
    _store = store
