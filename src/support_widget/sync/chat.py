"""Conversation/message synchronizer.

Keeps local collections of conversations and messages current for one of
two roles:

* staff (support agent or admin, i.e. the token store has a current user):
  everything visible to the support context, plus a live feed of all
  conversation changes and all new messages;
* client (anonymous): only the active conversation and its messages, with
  feeds filtered to that conversation id.

The set is re-derived whenever the active conversation or the authenticated
flag changes. Each bootstrap bumps a generation counter; fetch results and
change events tagged with an older generation are dropped.

Mutations write optimistically into local state and then reconcile with the
backend row; realtime echoes of the same id merge in place, so a record is
never duplicated.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Callable, Optional

from support_widget.config import BucketsConfig, SyncConfig
from support_widget.core.errors import (
    ClaimConflictError,
    ConversationClosedError,
    GatewayError,
    MutationResult,
    NotFoundError,
    SupportWidgetError,
    ValidationError,
)
from support_widget.core.session import TokenStore
from support_widget.core.types import (
    ChangeType,
    ConversationStatus,
    MessageKind,
    SenderType,
    can_transition,
)
from support_widget.error_log import ErrorLogger
from support_widget.gateway.base import ChangeEvent, Subscription
from support_widget.gateway.client import Contexts, ServiceClient
from support_widget.log import get_logger
from support_widget.storage.models import Conversation, Message, utc_now
from support_widget.sync.collection import RecordCollection
from support_widget.sync.uploads import upload_chat_image

logger = get_logger(__name__)

DEFAULT_AGENT_NAME = "Agent"


class ChatSynchronizer:
    """Local conversation/message state reconciled with the backend."""

    def __init__(
        self,
        contexts: Contexts,
        tokens: TokenStore,
        *,
        sync_config: SyncConfig | None = None,
        buckets: BucketsConfig | None = None,
        error_log: ErrorLogger | None = None,
        agent_display_name: str | None = None,
    ):
        self._contexts = contexts
        self._tokens = tokens
        self._config = sync_config or SyncConfig()
        self._buckets = buckets or BucketsConfig()
        self._error_log = error_log
        self._agent_display_name = agent_display_name
        self.conversations: RecordCollection[Conversation] = RecordCollection()
        self.messages: RecordCollection[Message] = RecordCollection()
        self._subscriptions: list[Subscription] = []
        self._generation = 0
        self._pending: set[asyncio.Task] = set()
        self._listeners: list[Callable[[], None]] = []
        self._unlisten: Callable[[], None] | None = None

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        self._unlisten = self._tokens.on_change(self._on_state_change)
        await self.bootstrap()

    async def stop(self) -> None:
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None
        self._generation += 1
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._teardown()

    @property
    def is_staff(self) -> bool:
        return self._tokens.is_authenticated

    @property
    def generation(self) -> int:
        return self._generation

    def on_update(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call *listener* after every change to local state."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _on_state_change(self, key: str) -> None:
        logger.debug("sync_state_changed", key=key)
        task = asyncio.get_running_loop().create_task(self.bootstrap())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def settle(self) -> None:
        """Wait for pending bootstraps and for every queued change event."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        for sub in list(self._subscriptions):
            await sub.wait_idle()

    # -- bootstrap --------------------------------------------------------

    async def bootstrap(self) -> None:
        self._generation += 1
        generation = self._generation
        await self._teardown()
        if generation != self._generation:
            return
        if self.is_staff:
            await self._bootstrap_staff(generation)
        else:
            await self._bootstrap_client(generation)
        self._emit()

    async def _teardown(self) -> None:
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            await sub.close()

    def _is_current(self, generation: int) -> bool:
        if generation != self._generation:
            logger.debug("stale_result_dropped", generation=generation, current=self._generation)
            return False
        return True

    async def _bootstrap_staff(self, generation: int) -> None:
        ctx = self._contexts.support
        logger.info("sync_bootstrap", role="staff", generation=generation)
        try:
            await self._subscribe(ctx, "conversations", generation)
            await self._subscribe(ctx, "messages", generation, events=[ChangeType.INSERT])
            conv_rows = await ctx.select("conversations", order_by="created_at")
            msg_rows = await ctx.select("messages", order_by="created_at")
        except GatewayError as e:
            logger.error("sync_bootstrap_failed", role="staff", error=str(e))
            await self._report(e, "bootstrap")
            return
        if not self._is_current(generation):
            return
        for row in conv_rows:
            self._merge_conversation(Conversation.from_row(row))
        self.messages.merge_all(Message.from_row(r) for r in msg_rows)

    async def _bootstrap_client(self, generation: int) -> None:
        conversation_id = self._tokens.active_conversation
        self.conversations.replace_where(lambda c: c.id != conversation_id, [])
        self.messages.replace_where(lambda m: m.conversation_id != conversation_id, [])
        if conversation_id is None:
            logger.debug("sync_bootstrap", role="client", conversation_id=None)
            return

        ctx = self._contexts.public
        logger.info("sync_bootstrap", role="client", conversation_id=conversation_id, generation=generation)
        try:
            await self._subscribe(ctx, "conversations", generation, eq=("id", conversation_id))
            await self._subscribe(
                ctx,
                "messages",
                generation,
                events=[ChangeType.INSERT],
                eq=("conversation_id", conversation_id),
            )
            conv_row = await ctx.select_one("conversations", id=conversation_id)
            msg_rows = await ctx.select(
                "messages", eq={"conversation_id": conversation_id}, order_by="created_at"
            )
        except GatewayError as e:
            logger.error("sync_bootstrap_failed", role="client", error=str(e))
            await self._report(e, "bootstrap", conversation_id=conversation_id)
            return
        if not self._is_current(generation):
            return
        if conv_row is not None:
            self._merge_conversation(Conversation.from_row(conv_row))
        self.messages.merge_all(Message.from_row(r) for r in msg_rows)

    async def _subscribe(
        self,
        ctx: ServiceClient,
        table: str,
        generation: int,
        *,
        events: list[ChangeType] | None = None,
        eq: tuple[str, str] | None = None,
    ) -> None:
        def _handler(event: ChangeEvent) -> None:
            if generation == self._generation:
                self._apply(event)

        sub = await ctx.subscribe(table, _handler, events=events, eq=eq)
        if generation != self._generation:
            await sub.close()
            return
        self._subscriptions.append(sub)

    def _merge_conversation(self, conversation: Conversation) -> bool:
        """Upsert *conversation* unless it would move the local status backward."""
        current = self.conversations.get(conversation.id)
        if current is not None and not can_transition(current.status, conversation.status):
            logger.debug(
                "stale_conversation_ignored",
                conversation_id=conversation.id,
                local=str(current.status),
                incoming=str(conversation.status),
            )
            return False
        self.conversations.upsert(conversation)
        return True

    def _apply(self, event: ChangeEvent) -> None:
        if event.table == "conversations":
            if event.type is ChangeType.DELETE:
                self.conversations.remove(event.row["id"])
            else:
                self._merge_conversation(Conversation.from_row(event.new))
        elif event.table == "messages" and event.type is ChangeType.INSERT:
            self.messages.upsert(Message.from_row(event.new))
        self._emit()

    # -- reads ------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    def get_messages(self, conversation_id: str) -> list[Message]:
        return self.messages.sorted(lambda m: m.conversation_id == conversation_id)

    def list_conversations(self, status: str | None = None) -> list[Conversation]:
        return self.conversations.sorted(lambda c: status is None or c.status == status)

    # -- mutations --------------------------------------------------------

    async def create_conversation(
        self, community_id: str, member_email: str | None = None
    ) -> MutationResult[str]:
        community_id = community_id.strip()
        if not community_id:
            return MutationResult.failure(ValidationError("community id is required"))

        ctx = self._contexts.public
        member_id = None
        if member_email:
            try:
                member_id = await ctx.rpc(
                    "resolve_member", community_id=community_id, email=member_email.strip()
                )
            except GatewayError as e:
                logger.warning("member_lookup_failed", community_id=community_id, error=str(e))

        conversation = Conversation(
            id=uuid.uuid4().hex,
            community_id=community_id,
            status=ConversationStatus.OPEN,
            claimed_by=None,
            client_token=ctx.client_token,
            member_id=member_id,
        )
        try:
            rows = await ctx.insert("conversations", conversation.to_row())
        except GatewayError as e:
            return await self._fail("create_conversation", e, community_id=community_id)

        self._tokens.set_active_conversation(conversation.id)
        self._merge_conversation(Conversation.from_row(rows[0]) if rows else conversation)
        self._emit()
        logger.info("conversation_created", conversation_id=conversation.id, community_id=community_id)
        return MutationResult.success(conversation.id)

    def _context_for(self, sender: SenderType) -> ServiceClient:
        return self._contexts.public if sender is SenderType.CLIENT else self._contexts.support

    def _is_optimistic(self, sender: SenderType) -> bool:
        return sender is SenderType.CLIENT or self._config.optimistic_agent_messages

    async def _message_token(self, sender: SenderType, conversation_id: str) -> Optional[str]:
        """Messages carry their conversation's client token so the client can read them."""
        if sender is SenderType.CLIENT:
            return self._contexts.public.client_token
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            row = await self._contexts.support.select_one("conversations", id=conversation_id)
            if row is None:
                raise NotFoundError(f"conversation {conversation_id} not found", table="conversations")
            conversation = Conversation.from_row(row)
        return conversation.client_token

    def _check_open(self, conversation_id: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is not None and conversation.is_closed:
            raise ConversationClosedError(conversation_id)

    async def add_message(
        self, conversation_id: str, text: str, sender: str | SenderType
    ) -> MutationResult[Message]:
        sender = SenderType(sender)
        if not text.strip():
            return MutationResult.failure(ValidationError("message text is empty"))
        try:
            self._check_open(conversation_id)
            token = await self._message_token(sender, conversation_id)
        except SupportWidgetError as e:
            return await self._fail("add_message", e, conversation_id=conversation_id)

        message = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_type=sender,
            text=text,
            kind=MessageKind.TEXT,
            client_token=token,
        )
        return await self._write_message(message, sender)

    async def send_image_message(
        self,
        conversation_id: str,
        data: bytes,
        filename: str,
        sender: str | SenderType,
        content_type: str | None = None,
    ) -> MutationResult[Message]:
        """Upload first; the image message row exists only if the upload succeeded."""
        sender = SenderType(sender)
        ctx = self._context_for(sender)
        try:
            self._check_open(conversation_id)
            token = await self._message_token(sender, conversation_id)
            uploaded = await upload_chat_image(
                ctx,
                self._buckets.chat_uploads,
                conversation_id=conversation_id,
                sender=str(sender),
                data=data,
                filename=filename,
                content_type=content_type,
            )
        except SupportWidgetError as e:
            return await self._fail("send_image_message", e, conversation_id=conversation_id)

        message = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_type=sender,
            text="",
            kind=MessageKind.IMAGE,
            image_url=uploaded.public_url,
            image_path=uploaded.path,
            client_token=token,
        )
        return await self._write_message(message, sender)

    async def _write_message(self, message: Message, sender: SenderType) -> MutationResult[Message]:
        ctx = self._context_for(sender)
        optimistic = self._is_optimistic(sender)
        generation = self._generation
        if optimistic:
            self.messages.upsert(message)
            self._emit()
        try:
            rows = await ctx.insert("messages", message.to_row())
        except GatewayError as e:
            if optimistic:
                self.messages.remove(message.id)
                self._emit()
            return await self._fail(
                "add_message", e, conversation_id=message.conversation_id, sender=str(sender)
            )

        stored = Message.from_row(rows[0]) if rows else message
        if optimistic and message.id in self.messages:
            self.messages.upsert(stored)
        logger.info(
            "message_sent",
            conversation_id=message.conversation_id,
            sender=str(sender),
            kind=message.kind,
            optimistic=optimistic,
        )
        if sender is SenderType.CLIENT and self._config.refetch_after_client_send:
            await self._refetch_messages(ctx, message.conversation_id, generation)
        return MutationResult.success(stored)

    async def _refetch_messages(self, ctx: ServiceClient, conversation_id: str, generation: int) -> None:
        """Pick up replies the backend may have produced out-of-band."""
        try:
            rows = await ctx.select(
                "messages", eq={"conversation_id": conversation_id}, order_by="created_at"
            )
        except GatewayError as e:
            logger.warning("message_refetch_failed", conversation_id=conversation_id, error=str(e))
            return
        if not self._is_current(generation):
            return
        self.messages.merge_all(Message.from_row(r) for r in rows)
        self._emit()

    def agent_name(self, override: str | None = None) -> str:
        """Display name used as claimant: explicit, then current user, then config."""
        if override:
            return override
        user = self._tokens.current_user or {}
        return user.get("display_name") or user.get("name") or self._agent_display_name or DEFAULT_AGENT_NAME

    async def claim_conversation(
        self, conversation_id: str, agent_name: str | None = None
    ) -> MutationResult[Conversation]:
        """Claim an open conversation; exactly one concurrent claimer wins."""
        ctx = self._contexts.support
        name = self.agent_name(agent_name)
        try:
            rows = await ctx.update(
                "conversations",
                {"status": ConversationStatus.CLAIMED.value, "claimed_by": name},
                eq={"id": conversation_id, "status": ConversationStatus.OPEN.value},
                is_null=("claimed_by",),
            )
        except GatewayError as e:
            return await self._fail("claim_conversation", e, conversation_id=conversation_id)

        if not rows:
            await self._refresh_conversation(ctx, conversation_id)
            return await self._fail(
                "claim_conversation", ClaimConflictError(conversation_id), conversation_id=conversation_id
            )

        conversation = Conversation.from_row(rows[0])
        self._merge_conversation(conversation)
        self._emit()
        logger.info("conversation_claimed", conversation_id=conversation_id, claimed_by=name)
        return MutationResult.success(conversation)

    async def _refresh_conversation(self, ctx: ServiceClient, conversation_id: str) -> None:
        try:
            row = await ctx.select_one("conversations", id=conversation_id)
        except GatewayError as e:
            logger.warning("conversation_refresh_failed", conversation_id=conversation_id, error=str(e))
            return
        if row is not None:
            self._merge_conversation(Conversation.from_row(row))
            self._emit()

    async def close_conversation(self, conversation_id: str) -> MutationResult[Conversation]:
        ctx = self._contexts.support
        try:
            rows = await ctx.update(
                "conversations",
                {"status": ConversationStatus.CLOSED.value},
                eq={"id": conversation_id},
            )
        except GatewayError as e:
            return await self._fail("close_conversation", e, conversation_id=conversation_id)
        if not rows:
            return await self._fail(
                "close_conversation",
                NotFoundError(f"conversation {conversation_id} not found", table="conversations"),
                conversation_id=conversation_id,
            )
        conversation = Conversation.from_row(rows[0])
        self._merge_conversation(conversation)
        self._emit()
        logger.info("conversation_closed", conversation_id=conversation_id)
        return MutationResult.success(conversation)

    async def mark_seen(self, side: str | SenderType, conversation_id: str) -> MutationResult[bool]:
        """Stamp this side's last-seen time; the result says whether a row matched."""
        side = SenderType(side)
        try:
            if side is SenderType.CLIENT:
                ctx = self._contexts.public
                matched = await ctx.rpc(
                    "mark_client_seen", conversation_id=conversation_id, client_token=ctx.client_token
                )
                return MutationResult.success(bool(matched))

            rows = await self._contexts.support.update(
                "conversations", {"agent_last_seen_at": utc_now()}, eq={"id": conversation_id}
            )
        except GatewayError as e:
            logger.debug("mark_seen_failed", side=str(side), conversation_id=conversation_id, error=str(e))
            return MutationResult.failure(e)
        for row in rows:
            self._merge_conversation(Conversation.from_row(row))
        if rows:
            self._emit()
        return MutationResult.success(bool(rows))

    # -- errors -----------------------------------------------------------

    async def _fail(self, op: str, error: SupportWidgetError, **context: str) -> MutationResult:
        logger.error("mutation_failed", op=op, error=str(error), code=error.code, **context)
        await self._report(error, op, **context)
        return MutationResult.failure(error)

    async def _report(self, error: SupportWidgetError, op: str, **context: str) -> None:
        if self._error_log is None:
            return
        await self._error_log.log_exception(error, function_name=op, extra_context=context or None)
