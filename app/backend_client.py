"""
REST client for the managed backend (PostgREST-style API).

Supplies the raw fetch functions that cached services wrap. Nothing here
caches; HTTP errors propagate as requests exceptions.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from config.settings import settings

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("backend_client")

_OPERATORS = ("eq.", "neq.", "gt.", "gte.", "lt.", "lte.", "like.", "ilike.", "in.", "is.")
_LOGICAL_KEYS = ("and", "or")


def _format_filter(value: Any) -> str:
    """Encode a Python value as a PostgREST filter expression."""
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    if isinstance(value, (list, tuple, set)):
        return f"in.({','.join(str(v) for v in value)})"
    if isinstance(value, str) and value.startswith(_OPERATORS):
        # Already an operator expression, e.g. "gte.2024-01-01"
        return value
    return f"eq.{value}"


def build_filter_params(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Filters dict -> PostgREST query params. None values are dropped.

    "and" / "or" values are logical groups such as
    "(created_at.gte.2024-01-01,created_at.lte.2024-01-31)" and are sent as-is.
    """
    if not filters:
        return {}
    return {
        k: str(v) if k in _LOGICAL_KEYS else _format_filter(v)
        for k, v in filters.items() if v is not None
    }


class BackendClient:
    """
    Thin wrapper over the backend's table and RPC endpoints.

    A semaphore bounds concurrent requests so batch warm-ups can't open
    more connections than the backend allows.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrent_requests: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.backend_api_key
        self.timeout = timeout or settings.backend_timeout_seconds
        self._semaphore = threading.Semaphore(
            max_concurrent_requests or settings.backend_max_concurrent_requests
        )

    def _get_headers(self, prefer: Optional[str] = None) -> dict:
        """Get API authentication headers."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _make_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """
        Send a request and decode the JSON body.

        Raises:
            requests.HTTPError: Non-2xx response
            requests.RequestException: Connection problems and timeouts
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        with self._semaphore:
            response = requests.request(
                method,
                url,
                headers=self._get_headers(prefer),
                params=params,
                json=json,
                timeout=self.timeout,
            )
        if not response.ok:
            logger.warning(f"Backend {method} {path} failed: {response.status_code}")
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # Tables
    # =========================================================================

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read rows from a table."""
        params: Dict[str, Any] = {"select": columns}
        params.update(build_filter_params(filters))
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        return self._make_request("GET", table, params=params) or []

    def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self._make_request("POST", table, json=row, prefer="return=representation")
        return rows[0] if rows else None

    def update(
        self, table: str, filters: Dict[str, Any], changes: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        return self._make_request(
            "PATCH",
            table,
            params=build_filter_params(filters),
            json=changes,
            prefer="return=representation",
        ) or []

    def delete(self, table: str, filters: Dict[str, Any]) -> None:
        self._make_request("DELETE", table, params=build_filter_params(filters))

    # =========================================================================
    # Stored procedures
    # =========================================================================

    def rpc(self, function: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """Call a database function. None-valued arguments are dropped."""
        payload = {k: v for k, v in (args or {}).items() if v is not None}
        return self._make_request("POST", f"rpc/{function}", json=payload)
