"""Data models for conversations, messages and the provider catalog."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator

from support_widget.core.types import ConversationStatus, MessageKind, ProviderType


def utc_now() -> str:
    """Current time as the ISO-8601 UTC string every row uses."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Conversation:
    id: str
    community_id: str
    status: str = ConversationStatus.OPEN
    claimed_by: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    client_token: Optional[str] = None
    member_id: Optional[str] = None
    client_last_seen_at: Optional[str] = None
    agent_last_seen_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Conversation:
        return cls(
            id=row["id"],
            community_id=row["community_id"],
            status=row.get("status") or ConversationStatus.OPEN,
            claimed_by=row.get("claimed_by"),
            created_at=row["created_at"],
            client_token=row.get("client_token"),
            member_id=row.get("member_id"),
            client_last_seen_at=row.get("client_last_seen_at"),
            agent_last_seen_at=row.get("agent_last_seen_at"),
        )

    def to_row(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_closed(self) -> bool:
        return self.status == ConversationStatus.CLOSED


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_type: str  # "client" | "agent"
    text: str = ""
    kind: str = MessageKind.TEXT
    image_url: Optional[str] = None
    image_path: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    client_token: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_type=row["sender_type"],
            text=row.get("text") or "",
            kind=row.get("kind") or MessageKind.TEXT,
            image_url=row.get("image_url"),
            image_path=row.get("image_path"),
            created_at=row["created_at"],
            client_token=row.get("client_token"),
        )

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Provider:
    id: str
    name: str
    type: str
    category: str
    description: str
    cashback_percent: float
    revenue_share_text: str
    link: str
    logo_url: Optional[str] = None
    is_active: bool = True
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Provider:
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            category=row.get("category") or "",
            description=row.get("description") or "",
            cashback_percent=float(row.get("cashback_percent") or 0),
            revenue_share_text=row.get("revenue_share_text") or "",
            link=row.get("link") or "",
            logo_url=row.get("logo_url"),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


class ProviderInput(BaseModel):
    """Validated provider fields as entered on the admin screen."""

    name: str = Field(min_length=1)
    type: ProviderType = ProviderType.OTHER
    category: str = ""
    description: str = ""
    cashback_percent: float = Field(default=0.0, ge=0)
    revenue_share_text: str = ""
    link: str = "#"
    logo_url: Optional[HttpUrl] = None
    is_active: bool = True

    @field_validator("name", "category")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    def to_row(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["type"] = str(self.type)
        return data


class ProviderPatch(BaseModel):
    """Partial update; only explicitly set fields are written."""

    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[ProviderType] = None
    category: Optional[str] = None
    description: Optional[str] = None
    cashback_percent: Optional[float] = Field(default=None, ge=0)
    revenue_share_text: Optional[str] = None
    link: Optional[str] = None
    logo_url: Optional[HttpUrl] = None
    is_active: Optional[bool] = None

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


@dataclass(frozen=True, slots=True)
class AuthUser:
    id: str
    email: str
    display_name: str


@dataclass(frozen=True, slots=True)
class AuthSession:
    access_token: str
    user: AuthUser
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "user": asdict(self.user),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthSession:
        return cls(
            access_token=data["access_token"],
            user=AuthUser(**data["user"]),
            created_at=data.get("created_at") or utc_now(),
        )
