"""Attachment hashing, serialization and materialization helpers.

Generated images are never inlined into message text. Their bytes are stored
content-addressed and the draft references them through a stable placeholder
of the form ``![file-hash:<hash>](<transparent gif>)``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Sequence
from urllib.parse import unquote_to_bytes

import httpx

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..storage.base import MessageStore

LOGGER = logging.getLogger(__name__)

MAX_MESSAGE_FILE_HASHES = 6
TRANSPARENT_GIF_DATA_URI = "data:image/gif;base64,R0lGODlhAQABAAAAACw="
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(?P<params>(;[^,]*)*?),(?P<payload>.*)$", re.DOTALL)


def content_hash(data: bytes) -> str:
    """Return the content address (sha256 hex digest) for ``data``."""

    return hashlib.sha256(data).hexdigest()


def serialize_file_hashes(hashes: Iterable[str]) -> str:
    """Serialize up to :data:`MAX_MESSAGE_FILE_HASHES` unique hashes as a JSON array."""

    return json.dumps(_dedupe(hashes)[:MAX_MESSAGE_FILE_HASHES])


def parse_file_hashes(serialized: str | None) -> list[str]:
    """Parse a serialized hash list, accepting JSON arrays or comma-separated text."""

    if not serialized:
        return []
    text = serialized.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            LOGGER.debug("Unparseable file hash payload: %s", text[:80])
            return []
        if not isinstance(payload, list):
            return []
        return _dedupe(str(item) for item in payload if isinstance(item, str) and item)
    return _dedupe(part.strip() for part in text.split(",") if part.strip())


def hash_placeholder(file_hash: str) -> str:
    return f"![file-hash:{file_hash}]({TRANSPARENT_GIF_DATA_URI})"


def remote_image_placeholder(url: str) -> str:
    return f"![generated image]({url})"


def append_placeholder(text: str, placeholder: str) -> str:
    """Append ``placeholder`` on its own paragraph unless it is already present."""

    if placeholder in text:
        return text
    if not text:
        return placeholder
    return f"{text}\n\n{placeholder}"


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


# -----------------------------------------------------------------------------
# Materialization
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class MaterializedImage:
    data: bytes
    mime_type: str


def decode_data_url(url: str) -> MaterializedImage:
    """Decode a ``data:`` URL into bytes.

    Raises:
        ValueError: If the URL is not a well-formed data URL.
    """

    match = _DATA_URL_RE.match(url)
    if match is None:
        raise ValueError("Not a data URL")
    mime_type = match.group("mime") or "application/octet-stream"
    payload = match.group("payload")
    if ";base64" in (match.group("params") or ""):
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Invalid base64 payload in data URL") from exc
    else:
        data = unquote_to_bytes(payload)
    if not data:
        raise ValueError("Data URL has an empty payload")
    return MaterializedImage(data=data, mime_type=mime_type)


class AttachmentMaterializer:
    """Turns image references from the model into stored, content-addressed bytes."""

    def __init__(
        self,
        store: "MessageStore",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
    ) -> None:
        self._store = store
        self._http_client = http_client
        self._timeout = timeout

    async def materialize(self, url: str) -> str:
        """Store the image behind ``url`` and return its content hash.

        Raises:
            ValueError: If the reference cannot be decoded.
            httpx.HTTPError: If a remote image cannot be fetched.
        """

        if url.startswith("data:"):
            image = decode_data_url(url)
        else:
            image = await self._fetch(url)
        return await self._store.put_file(image.data, image.mime_type)

    async def _fetch(self, url: str) -> MaterializedImage:
        if self._http_client is not None:
            response = await self._http_client.get(url, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                response = await client.get(url)
        response.raise_for_status()
        mime_type = response.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
        if not response.content:
            raise ValueError(f"Empty image response from {url}")
        return MaterializedImage(data=response.content, mime_type=mime_type or "application/octet-stream")


async def hash_to_content_part(store: "MessageStore", file_hash: str) -> dict[str, Any] | None:
    """Convert a stored file hash into a wire content part (images and PDFs only)."""

    stored = await store.get_file(file_hash)
    if stored is None:
        return None
    encoded = base64.b64encode(stored.data).decode("ascii")
    data_url = f"data:{stored.mime_type};base64,{encoded}"
    if stored.mime_type == "application/pdf":
        return {
            "type": "file",
            "file": {"filename": stored.name or "document.pdf", "file_data": data_url},
        }
    if not stored.mime_type.startswith("image/"):
        return None
    return {"type": "image_url", "image_url": {"url": data_url}}


async def hashes_to_content_parts(store: "MessageStore", hashes: Sequence[str]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for file_hash in hashes:
        part = await hash_to_content_part(store, file_hash)
        if part is not None:
            parts.append(part)
    return parts


__all__ = [
    "AttachmentMaterializer",
    "MAX_MESSAGE_FILE_HASHES",
    "MaterializedImage",
    "TRANSPARENT_GIF_DATA_URI",
    "append_placeholder",
    "content_hash",
    "decode_data_url",
    "hash_placeholder",
    "hash_to_content_part",
    "hashes_to_content_parts",
    "parse_file_hashes",
    "remote_image_placeholder",
    "serialize_file_hashes",
]
