"""Object uploads for chat attachments and provider logos."""

from __future__ import annotations

import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional

from support_widget.core.errors import GatewayError, UploadError
from support_widget.gateway.client import ServiceClient
from support_widget.log import get_logger

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


@dataclass(frozen=True, slots=True)
class UploadedObject:
    public_url: str
    path: str


def _ext(filename: str, default: str) -> str:
    parts = filename.rsplit(".", 1)
    return parts[1].lower() if len(parts) > 1 and parts[1] else default


def chat_image_path(conversation_id: str, sender: str, filename: str, now_ms: int | None = None) -> str:
    """``conversations/<id>/<sender>/<epoch_ms>_<safe name>``; a bare name gets ``.jpg``."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    safe_name = _UNSAFE_CHARS.sub("_", filename) or "image"
    if "." not in filename:
        safe_name = f"{safe_name}.jpg"
    return f"conversations/{conversation_id}/{sender}/{now_ms}_{safe_name}"


async def upload_chat_image(
    client: ServiceClient,
    bucket: str,
    *,
    conversation_id: str,
    sender: str,
    data: bytes,
    filename: str,
    content_type: str | None = None,
) -> UploadedObject:
    """Upload an image into the chat bucket; raises UploadError on any failure."""
    path = chat_image_path(conversation_id, sender, filename)
    try:
        stored = await client.upload(
            bucket, path, data, content_type=content_type or "image/*", upsert=False
        )
    except UploadError:
        raise
    except GatewayError as e:
        logger.error("chat_image_upload_failed", conversation_id=conversation_id, error=str(e))
        raise UploadError(str(e)) from e
    return UploadedObject(public_url=client.public_url(bucket, stored), path=stored)


def _random_suffix(length: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


async def upload_provider_logo(
    client: ServiceClient,
    bucket: str,
    data: Optional[bytes],
    filename: str = "",
    existing_url: str | None = None,
) -> Optional[str]:
    """Upload a logo and return its public URL; without data keep *existing_url*."""
    if not data:
        return existing_url
    path = f"logos/{int(time.time() * 1000)}-{_random_suffix()}.{_ext(filename, 'png')}"
    try:
        stored = await client.upload(bucket, path, data, upsert=True)
    except UploadError:
        raise
    except GatewayError as e:
        logger.error("provider_logo_upload_failed", error=str(e))
        raise UploadError(str(e)) from e
    return client.public_url(bucket, stored)
