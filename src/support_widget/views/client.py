"""End-client screens: start a chat, chat, browse the benefits catalog."""

from __future__ import annotations

from typing import Optional

from support_widget.catalog.providers import ProviderCatalog
from support_widget.core.errors import ConversationClosedError, MutationResult, ValidationError
from support_widget.core.session import TokenStore
from support_widget.core.types import SenderType
from support_widget.log import get_logger
from support_widget.services.presence import PresenceService
from support_widget.storage.models import Conversation, Message, Provider
from support_widget.sync.chat import ChatSynchronizer
from support_widget.views.receipts import Receipt, receipt_for

logger = get_logger(__name__)


class ClientStartScreen:
    """Collects the community id (and optional member email) and opens a chat."""

    def __init__(self, sync: ChatSynchronizer, tokens: TokenStore):
        self._sync = sync
        self._tokens = tokens

    @property
    def resume_conversation(self) -> Optional[str]:
        return self._tokens.active_conversation

    @property
    def storage_warning(self) -> Optional[str]:
        if self._tokens.persistent:
            return None
        return "Local storage is unavailable; this chat will not survive a reload."

    async def start_chat(self, community_id: str, member_email: str | None = None) -> MutationResult[str]:
        result = await self._sync.create_conversation(community_id, member_email)
        if result.ok:
            await self._sync.settle()
        return result


class ClientChatScreen:
    """The client's view of its active conversation."""

    side = SenderType.CLIENT

    def __init__(
        self,
        sync: ChatSynchronizer,
        tokens: TokenStore,
        presence: PresenceService | None = None,
    ):
        self._sync = sync
        self._tokens = tokens
        self._presence = presence
        self._job_id: str | None = None

    @property
    def conversation_id(self) -> Optional[str]:
        return self._tokens.active_conversation

    @property
    def conversation(self) -> Optional[Conversation]:
        if self.conversation_id is None:
            return None
        return self._sync.get_conversation(self.conversation_id)

    @property
    def messages(self) -> list[Message]:
        if self.conversation_id is None:
            return []
        return self._sync.get_messages(self.conversation_id)

    @property
    def input_enabled(self) -> bool:
        conversation = self.conversation
        return conversation is not None and not conversation.is_closed

    @property
    def receipt(self) -> Optional[Receipt]:
        return receipt_for(self.messages, self.conversation, self.side)

    async def mount(self) -> None:
        await self._sync.settle()
        if self._presence is not None and self.conversation_id is not None:
            self._job_id = self._presence.watch(self.side, self.conversation_id)

    def unmount(self) -> None:
        if self._presence is not None and self._job_id is not None:
            self._presence.unwatch(self._job_id)
        self._job_id = None

    def _guard(self) -> MutationResult | None:
        if self.conversation_id is None:
            return MutationResult.failure(ValidationError("no active conversation"))
        if not self.input_enabled:
            return MutationResult.failure(ConversationClosedError(self.conversation_id))
        return None

    async def send(self, text: str) -> MutationResult[Message]:
        rejected = self._guard()
        if rejected is not None:
            return rejected
        return await self._sync.add_message(self.conversation_id, text, self.side)

    async def send_image(
        self, data: bytes, filename: str, content_type: str | None = None
    ) -> MutationResult[Message]:
        rejected = self._guard()
        if rejected is not None:
            return rejected
        return await self._sync.send_image_message(
            self.conversation_id, data, filename, self.side, content_type=content_type
        )

    async def leave(self) -> None:
        """Forget the active conversation and go back to the start screen."""
        self.unmount()
        self._tokens.set_active_conversation(None)
        await self._sync.settle()


class ClientCatalogScreen:
    """Active providers with free-text search and a category filter."""

    def __init__(self, catalog: ProviderCatalog):
        self._catalog = catalog
        self.search = ""
        self.category = "all"

    async def mount(self) -> None:
        await self._catalog.start()

    async def unmount(self) -> None:
        await self._catalog.stop()

    async def refresh(self) -> None:
        await self._catalog.refresh()

    @property
    def categories(self) -> list[str]:
        return ["all", *self._catalog.categories()]

    @property
    def providers(self) -> list[Provider]:
        return self._catalog.filter(self.search, self.category)
