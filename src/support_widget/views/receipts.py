"""Read-receipt rule for the chat screens."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from support_widget.core.types import SenderType
from support_widget.storage.models import Conversation, Message, parse_ts


@dataclass(frozen=True, slots=True)
class Receipt:
    message_id: str
    seen: bool


def other_side_last_seen(conversation: Conversation, side: str | SenderType) -> Optional[str]:
    if SenderType(side) is SenderType.CLIENT:
        return conversation.agent_last_seen_at
    return conversation.client_last_seen_at


def is_seen(message: Message, other_last_seen: str | None) -> bool:
    """Seen iff the other side's last-seen time is at or after the message."""
    seen_at = parse_ts(other_last_seen)
    return seen_at is not None and seen_at >= parse_ts(message.created_at)


def receipt_for(
    messages: list[Message], conversation: Conversation | None, side: str | SenderType
) -> Optional[Receipt]:
    """Receipt for *side*'s latest own message, or None if it has sent nothing."""
    if conversation is None:
        return None
    own = [m for m in messages if m.sender_type == SenderType(side)]
    if not own:
        return None
    last = max(own, key=lambda m: m.created_at)
    return Receipt(message_id=last.id, seen=is_seen(last, other_side_last_seen(conversation, side)))
