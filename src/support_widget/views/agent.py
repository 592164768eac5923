"""Support-agent screens: login, inbox and conversation."""

from __future__ import annotations

from enum import StrEnum
from typing import Optional

from support_widget.core.errors import (
    AccessDeniedError,
    AuthError,
    ConversationClosedError,
    MutationResult,
    SupportWidgetError,
    ValidationError,
)
from support_widget.core.session import TokenStore
from support_widget.core.types import ConversationStatus, SenderType
from support_widget.gateway.client import ServiceClient
from support_widget.log import bind_context, get_logger
from support_widget.services.presence import PresenceService
from support_widget.storage.models import AuthUser, Conversation, Message
from support_widget.sync.chat import ChatSynchronizer
from support_widget.views.guards import require_support
from support_widget.views.receipts import Receipt, receipt_for

logger = get_logger(__name__)


def user_payload(user: AuthUser) -> dict[str, str]:
    return {"id": user.id, "email": user.email, "display_name": user.display_name}


class AgentLoginScreen:
    def __init__(self, client: ServiceClient, tokens: TokenStore):
        self._client = client
        self._tokens = tokens
        self.error: str | None = None

    async def login(self, email: str, password: str) -> MutationResult[AuthUser]:
        """Sign in on the support context, then require support membership."""
        try:
            await self._client.sign_in_with_password(email, password)
            user = await require_support(self._client)
        except (AuthError, AccessDeniedError) as e:
            self.error = str(e)
            logger.warning("agent_login_failed", email=email, code=e.code)
            return MutationResult.failure(e)
        self.error = None
        self._tokens.set_current_user(user_payload(user))
        bind_context(agent_id=user.id)
        logger.info("agent_logged_in", user_id=user.id)
        return MutationResult.success(user)


async def logout(client: ServiceClient, tokens: TokenStore) -> None:
    await client.sign_out()
    tokens.set_current_user(None)


class InboxTab(StrEnum):
    OPEN = "open"
    MINE = "mine"
    CLOSED = "closed"


class AgentInboxScreen:
    """Conversation list split into open, claimed-by-me and closed tabs."""

    def __init__(self, sync: ChatSynchronizer, client: ServiceClient, tokens: TokenStore):
        self._sync = sync
        self._client = client
        self._tokens = tokens
        self.tab = InboxTab.OPEN

    async def mount(self) -> AuthUser:
        try:
            user = await require_support(self._client)
        except AccessDeniedError:
            self._tokens.set_current_user(None)
            raise
        await self._sync.settle()
        return user

    @property
    def me(self) -> str:
        return self._sync.agent_name()

    def conversations(self, tab: InboxTab | str | None = None) -> list[Conversation]:
        match InboxTab(tab or self.tab):
            case InboxTab.OPEN:
                items = self._sync.list_conversations(ConversationStatus.OPEN)
            case InboxTab.MINE:
                items = [
                    c for c in self._sync.list_conversations(ConversationStatus.CLAIMED)
                    if c.claimed_by == self.me
                ]
            case InboxTab.CLOSED:
                items = self._sync.list_conversations(ConversationStatus.CLOSED)
        # newest first
        return list(reversed(items))

    @property
    def counts(self) -> dict[str, int]:
        return {tab.value: len(self.conversations(tab)) for tab in InboxTab}

    async def logout(self) -> None:
        await logout(self._client, self._tokens)
        await self._sync.settle()


class AgentChatScreen:
    side = SenderType.AGENT

    def __init__(
        self,
        sync: ChatSynchronizer,
        conversation_id: str,
        presence: PresenceService | None = None,
    ):
        self._sync = sync
        self.conversation_id = conversation_id
        self._presence = presence
        self._job_id: str | None = None

    @property
    def conversation(self) -> Optional[Conversation]:
        return self._sync.get_conversation(self.conversation_id)

    @property
    def messages(self) -> list[Message]:
        return self._sync.get_messages(self.conversation_id)

    @property
    def is_mine(self) -> bool:
        conversation = self.conversation
        return conversation is not None and conversation.claimed_by == self._sync.agent_name()

    @property
    def can_claim(self) -> bool:
        conversation = self.conversation
        return conversation is not None and conversation.status == ConversationStatus.OPEN

    @property
    def input_enabled(self) -> bool:
        conversation = self.conversation
        return (
            conversation is not None
            and conversation.status == ConversationStatus.CLAIMED
            and self.is_mine
        )

    @property
    def receipt(self) -> Optional[Receipt]:
        return receipt_for(self.messages, self.conversation, self.side)

    async def mount(self) -> None:
        await self._sync.settle()
        if self._presence is not None:
            self._job_id = self._presence.watch(self.side, self.conversation_id)

    def unmount(self) -> None:
        if self._presence is not None and self._job_id is not None:
            self._presence.unwatch(self._job_id)
        self._job_id = None

    async def claim(self) -> MutationResult[Conversation]:
        return await self._sync.claim_conversation(self.conversation_id)

    async def close(self) -> MutationResult[Conversation]:
        return await self._sync.close_conversation(self.conversation_id)

    def _rejected(self) -> SupportWidgetError | None:
        if self.input_enabled:
            return None
        if self.conversation is not None and self.conversation.is_closed:
            return ConversationClosedError(self.conversation_id)
        return ValidationError("claim the conversation before replying")

    async def send(self, text: str) -> MutationResult[Message]:
        error = self._rejected()
        if error is not None:
            return MutationResult.failure(error)
        return await self._sync.add_message(self.conversation_id, text, self.side)

    async def send_image(
        self, data: bytes, filename: str, content_type: str | None = None
    ) -> MutationResult[Message]:
        error = self._rejected()
        if error is not None:
            return MutationResult.failure(error)
        return await self._sync.send_image_message(
            self.conversation_id, data, filename, self.side, content_type=content_type
        )
