"""
Cache key builders.

A key is "<domain>:<operation>:<params>" where params are serialized
deterministically. Keys for different logical queries must not collide;
that is on the caller.
"""
import json
from typing import Any, Dict, Optional

PLATFORM = "platform"


def _serialize_params(params: Optional[Dict[str, Any]]) -> str:
    """Sorted JSON of the params with None values dropped."""
    if not params:
        return "{}"
    cleaned = {k: v for k, v in params.items() if v is not None}
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)


def build_key(domain: str, operation: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Generate a cache key from domain, operation and params."""
    return f"{domain}:{operation}:{_serialize_params(params)}"


def _scope(client_id: Optional[str]) -> str:
    return client_id or PLATFORM


# Dashboard

def dashboard_metrics(client_id: Optional[str] = None) -> str:
    return f"dashboard:metrics:{_scope(client_id)}"


def call_distribution(client_id: Optional[str] = None, timeframe: str = "week") -> str:
    return f"dashboard:call-distribution:{_scope(client_id)}:{timeframe}"


def agent_status(client_id: Optional[str] = None) -> str:
    return f"dashboard:agent-status:{_scope(client_id)}"


def system_messages(client_id: Optional[str] = None) -> str:
    return f"dashboard:system-messages:{_scope(client_id)}"


# Analytics

def analytics_data(client_id: Optional[str] = None, timeframe: str = "month") -> str:
    return f"analytics:data:{_scope(client_id)}:{timeframe}"


def call_performance(client_id: Optional[str] = None) -> str:
    return f"analytics:call-performance:{_scope(client_id)}"


def lead_conversion(client_id: Optional[str] = None) -> str:
    return f"analytics:lead-conversion:{_scope(client_id)}"


# Calls

def calls(filters: Optional[Dict[str, Any]] = None) -> str:
    return build_key("calls", "list", filters)


def call_stats(client_id: Optional[str] = None) -> str:
    return f"calls:stats:{_scope(client_id)}"


def recent_calls(limit: int = 5, client_id: Optional[str] = None) -> str:
    return f"calls:recent:{limit}:{_scope(client_id)}"


# Admin

def admin_clients(filters: Optional[Dict[str, Any]] = None,
                  pagination: Optional[Dict[str, Any]] = None) -> str:
    return build_key("admin", "clients", {"filters": filters, "pagination": pagination})


def admin_client(client_id: str) -> str:
    return f"admin:client:{client_id}"


def admin_users(filters: Optional[Dict[str, Any]] = None,
                pagination: Optional[Dict[str, Any]] = None) -> str:
    return build_key("admin", "users", {"filters": filters, "pagination": pagination})


def admin_user(user_id: str) -> str:
    return f"admin:user:{user_id}"


def platform_metrics() -> str:
    return "admin:platform-metrics"


def financial_metrics(timeframe: str = "current_month") -> str:
    return f"admin:financial:{timeframe}"


def cost_breakdown(start_date: str, end_date: str) -> str:
    return f"admin:costs:{start_date}:{end_date}"


def client_profitability(timeframe: str = "current_month") -> str:
    return f"admin:profitability:{timeframe}"


def growth_trends() -> str:
    return "admin:growth:trends"


def client_distribution() -> str:
    return "admin:client-distribution"


def user_analytics() -> str:
    return "admin:user-analytics"


def system_health(client_id: Optional[str] = None) -> str:
    return f"system:health:{_scope(client_id)}"
