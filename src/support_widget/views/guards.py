"""Route guards: a session alone is not enough, the user must be on a staff list."""

from __future__ import annotations

from support_widget.core.errors import AccessDeniedError, GatewayError
from support_widget.gateway.client import ServiceClient
from support_widget.log import get_logger
from support_widget.storage.models import AuthUser

logger = get_logger(__name__)

AGENT_LOGIN_ROUTE = "/agent/login"
ADMIN_LOGIN_ROUTE = "/admin/login"


async def member_of(client: ServiceClient, table: str) -> AuthUser | None:
    """Return the session user if it is listed in *table*, else None."""
    try:
        user = await client.get_user()
        if user is None:
            return None
        rows = await client.select(table, eq={"user_id": user.id}, limit=1)
    except GatewayError as e:
        logger.error("membership_check_failed", table=table, error=str(e))
        return None
    return user if rows else None


async def _require(client: ServiceClient, table: str, redirect_to: str) -> AuthUser:
    user = await member_of(client, table)
    if user is not None:
        return user
    try:
        await client.sign_out()
    except GatewayError as e:
        logger.warning("sign_out_failed", context=str(client.kind), error=str(e))
    logger.warning("access_denied", context=str(client.kind), table=table)
    raise AccessDeniedError(f"not a member of {table}", redirect_to=redirect_to)


async def require_support(client: ServiceClient, redirect_to: str = AGENT_LOGIN_ROUTE) -> AuthUser:
    return await _require(client, "support_users", redirect_to)


async def require_admin(client: ServiceClient, redirect_to: str = ADMIN_LOGIN_ROUTE) -> AuthUser:
    return await _require(client, "admin_users", redirect_to)
