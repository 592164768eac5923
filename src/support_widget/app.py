"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from support_widget.catalog.providers import ProviderCatalog
from support_widget.config import AppConfig
from support_widget.core.session import LocalStore, TokenStore
from support_widget.error_log import ErrorLogger
from support_widget.gateway.client import Contexts, ServiceClient, build_contexts
from support_widget.gateway.local import LocalBackend
from support_widget.log import bind_context, clear_context, get_logger
from support_widget.services.presence import PresenceService
from support_widget.sync.chat import ChatSynchronizer
from support_widget.views.admin import AdminLoginScreen, AdminProvidersScreen
from support_widget.views.agent import AgentChatScreen, AgentInboxScreen, AgentLoginScreen
from support_widget.views.client import ClientCatalogScreen, ClientChatScreen, ClientStartScreen

logger = get_logger(__name__)


class SupportWidgetApp:
    """Top-level application orchestrator.

    Every collaborator is built here once and handed to the screens; nothing
    reaches for a module-level client.
    """

    def __init__(self, config: AppConfig, backend: LocalBackend | None = None):
        self.config = config
        self.backend = backend or LocalBackend(config.backend, config.buckets)
        self.tokens = TokenStore(LocalStore(config.local_storage.path), config.local_storage)
        self.contexts: Contexts = build_contexts(self.backend, self.tokens, config.local_storage)
        self.error_log = ErrorLogger(self.contexts.public, config.error_log)
        self.sync = ChatSynchronizer(
            self.contexts,
            self.tokens,
            sync_config=config.sync,
            buckets=config.buckets,
            error_log=self.error_log,
            agent_display_name=config.agent_display_name,
        )
        self.admin_catalog = self._catalog(self.contexts.master)
        self.client_catalog = self._catalog(self.contexts.public)
        self.presence = PresenceService(config.presence, self.sync)

    def _catalog(self, client: ServiceClient) -> ProviderCatalog:
        return ProviderCatalog(client, buckets=self.config.buckets, error_log=self.error_log)

    async def start(self) -> None:
        """Initialize and start all components."""
        bind_context(environment=self.config.error_log.environment)

        # 1. Backend (schema, buckets)
        await self.backend.start()

        # 2. Presence pings
        await self.presence.start()

        # 3. Initial fetch + subscriptions for the current role
        await self.sync.start()

        logger.info(
            "support_widget_started",
            staff=self.sync.is_staff,
            active_conversation=self.tokens.active_conversation,
            persistent=self.tokens.persistent,
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        for name, step in (
            ("catalogs", self._stop_catalogs),
            ("sync", self.sync.stop),
            ("presence", self.presence.stop),
        ):
            try:
                await step()
            except Exception as e:
                logger.error("component_stop_error", component=name, error=str(e))
        await self.backend.stop()
        logger.info("support_widget_stopped")
        clear_context()

    async def _stop_catalogs(self) -> None:
        await self.admin_catalog.stop()
        await self.client_catalog.stop()

    async def __aenter__(self) -> SupportWidgetApp:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # -- screens ----------------------------------------------------------

    def client_start(self) -> ClientStartScreen:
        return ClientStartScreen(self.sync, self.tokens)

    def client_chat(self) -> ClientChatScreen:
        return ClientChatScreen(self.sync, self.tokens, self.presence)

    def client_catalog_screen(self) -> ClientCatalogScreen:
        return ClientCatalogScreen(self.client_catalog)

    def agent_login(self) -> AgentLoginScreen:
        return AgentLoginScreen(self.contexts.support, self.tokens)

    def agent_inbox(self) -> AgentInboxScreen:
        return AgentInboxScreen(self.sync, self.contexts.support, self.tokens)

    def agent_chat(self, conversation_id: str) -> AgentChatScreen:
        return AgentChatScreen(self.sync, conversation_id, self.presence)

    def admin_login(self) -> AdminLoginScreen:
        return AdminLoginScreen(self.contexts.master)

    def admin_providers(self) -> AdminProvidersScreen:
        return AdminProvidersScreen(self.contexts.master, self.admin_catalog)
