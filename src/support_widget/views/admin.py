"""Master-admin screens: login and provider catalog management."""

from __future__ import annotations

from typing import Any

from support_widget.catalog.providers import ProviderCatalog
from support_widget.core.errors import AccessDeniedError, AuthError, MutationResult
from support_widget.gateway.client import ServiceClient
from support_widget.log import get_logger
from support_widget.storage.models import AuthUser, Provider
from support_widget.views.guards import require_admin

logger = get_logger(__name__)


class AdminLoginScreen:
    """Signs in on the master context only; the support session is untouched."""

    def __init__(self, client: ServiceClient):
        self._client = client
        self.error: str | None = None

    async def login(self, email: str, password: str) -> MutationResult[AuthUser]:
        try:
            await self._client.sign_in_with_password(email, password)
            user = await require_admin(self._client)
        except (AuthError, AccessDeniedError) as e:
            self.error = str(e)
            logger.warning("admin_login_failed", email=email, code=e.code)
            return MutationResult.failure(e)
        self.error = None
        logger.info("admin_logged_in", user_id=user.id)
        return MutationResult.success(user)


class AdminProvidersScreen:
    def __init__(self, client: ServiceClient, catalog: ProviderCatalog):
        self._client = client
        self._catalog = catalog

    async def mount(self) -> AuthUser:
        user = await require_admin(self._client)
        await self._catalog.start(seed=True)
        return user

    async def unmount(self) -> None:
        await self._catalog.stop()

    @property
    def providers(self) -> list[Provider]:
        """Every provider, active or not, by name."""
        return sorted(self._catalog.providers, key=lambda p: p.name.casefold())

    async def save(
        self,
        form: dict[str, Any],
        *,
        provider_id: str | None = None,
        logo: bytes | None = None,
        logo_filename: str = "",
    ) -> MutationResult[Provider]:
        """Create or edit a provider, uploading a new logo first when given."""
        existing = self._catalog.get(provider_id) if provider_id else None
        uploaded = await self._catalog.upload_logo(
            logo, logo_filename, existing.logo_url if existing else form.get("logo_url")
        )
        if not uploaded.ok:
            return MutationResult.failure(uploaded.error)
        values = {**form}
        if uploaded.value:
            values["logo_url"] = uploaded.value
        if provider_id:
            return await self._catalog.update(provider_id, values)
        return await self._catalog.add(values)

    async def delete(self, provider_id: str) -> MutationResult[bool]:
        return await self._catalog.delete(provider_id)

    async def toggle(self, provider_id: str) -> MutationResult[Provider]:
        return await self._catalog.toggle_active(provider_id)

    async def logout(self) -> None:
        await self.unmount()
        await self._client.sign_out()
