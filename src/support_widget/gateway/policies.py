"""Row-level security rules applied by the local backend."""

from __future__ import annotations

from typing import Any

from support_widget.core.errors import AuthorizationError
from support_widget.core.types import SenderType
from support_widget.gateway.base import Principal

# Tables reachable through the gateway; auth tables stay private.
API_TABLES = frozenset({
    "conversations",
    "messages",
    "providers",
    "support_users",
    "admin_users",
    "communities",
    "members",
    "error_logs",
})


def _owns(principal: Principal, row: dict[str, Any]) -> bool:
    return bool(principal.client_token) and row.get("client_token") == principal.client_token


def can_read(principal: Principal, table: str, row: dict[str, Any]) -> bool:
    if principal.is_service:
        return True
    match table:
        case "conversations" | "messages":
            return principal.is_staff or _owns(principal, row)
        case "providers":
            return principal.is_staff or bool(row.get("is_active"))
        case "support_users" | "admin_users":
            return principal.user_id is not None and row.get("user_id") == principal.user_id
        case "communities":
            return True
        case "members":
            return principal.is_staff
        case "error_logs":
            return principal.is_admin
        case _:
            return False


def check_insert(principal: Principal, table: str, row: dict[str, Any]) -> None:
    if principal.is_service:
        return
    match table:
        case "conversations":
            if principal.is_staff or _owns(principal, row):
                return
        case "messages":
            sender = row.get("sender_type")
            if sender == SenderType.CLIENT and _owns(principal, row):
                return
            if sender == SenderType.AGENT and principal.is_support:
                return
        case "providers":
            if principal.is_admin:
                return
        case "error_logs":
            return
    raise AuthorizationError(f"insert on {table} not permitted", table=table)


def check_update(principal: Principal, table: str) -> None:
    if principal.is_service:
        return
    match table:
        case "conversations":
            if principal.is_staff:
                return
        case "providers":
            if principal.is_admin:
                return
    raise AuthorizationError(f"update on {table} not permitted", table=table)


def check_delete(principal: Principal, table: str) -> None:
    if principal.is_service:
        return
    if table == "providers" and principal.is_admin:
        return
    raise AuthorizationError(f"delete on {table} not permitted", table=table)


def check_upload(principal: Principal, bucket: str, buckets: dict[str, str]) -> None:
    """*buckets* maps logical names ("chat_uploads", "provider_logos") to bucket ids."""
    if principal.is_service:
        return
    if bucket == buckets.get("chat_uploads") and (principal.client_token or principal.is_staff):
        return
    if bucket == buckets.get("provider_logos") and principal.is_admin:
        return
    raise AuthorizationError(f"upload to bucket {bucket} not permitted")
