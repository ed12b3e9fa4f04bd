"""Tests for attachment helpers."""

from __future__ import annotations

import httpx
import pytest

from chatweave.chat.files import (
    AttachmentMaterializer,
    append_placeholder,
    content_hash,
    decode_data_url,
    hash_placeholder,
    hash_to_content_part,
    parse_file_hashes,
    remote_image_placeholder,
    serialize_file_hashes,
)
from chatweave.storage.memory import InMemoryMessageStore

from tests.helpers import data_url


def test_serialize_dedupes_and_caps_hashes() -> None:
    serialized = serialize_file_hashes(["a", "b", "a", "c", "d", "e", "f", "g"])

    assert serialized == '["a", "b", "c", "d", "e", "f"]'


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        (None, []),
        ("", []),
        ('["a", "b", "a"]', ["a", "b"]),
        ("a, b ,c", ["a", "b", "c"]),
        ("[broken", []),
        ('{"a": 1}', ["{\"a\": 1}"]),
    ],
)
def test_parse_file_hashes(payload: str | None, expected: list[str]) -> None:
    assert parse_file_hashes(payload) == expected


def test_placeholders() -> None:
    assert hash_placeholder("abc") == "![file-hash:abc](data:image/gif;base64,R0lGODlhAQABAAAAACw=)"
    assert remote_image_placeholder("https://x/y.png") == "![generated image](https://x/y.png)"
    assert append_placeholder("", "P") == "P"
    assert append_placeholder("Text", "P") == "Text\n\nP"
    assert append_placeholder("Text\n\nP", "P") == "Text\n\nP"


def test_decode_data_url_variants() -> None:
    encoded = decode_data_url(data_url(b"png-bytes"))
    plain = decode_data_url("data:text/plain,hello%20world")

    assert encoded.data == b"png-bytes"
    assert encoded.mime_type == "image/png"
    assert plain.data == b"hello world"
    with pytest.raises(ValueError):
        decode_data_url("https://example.com/image.png")
    with pytest.raises(ValueError):
        decode_data_url("data:image/png;base64,")


@pytest.mark.asyncio
async def test_materializer_stores_data_urls(store: InMemoryMessageStore) -> None:
    materializer = AttachmentMaterializer(store)

    file_hash = await materializer.materialize(data_url(b"image-one"))

    assert file_hash == content_hash(b"image-one")
    stored = await store.get_file(file_hash)
    assert stored is not None and stored.mime_type == "image/png"


@pytest.mark.asyncio
async def test_materializer_fetches_remote_images(store: InMemoryMessageStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/generated.webp"
        return httpx.Response(200, content=b"remote", headers={"content-type": "image/webp; charset=binary"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        materializer = AttachmentMaterializer(store, http_client=client)
        file_hash = await materializer.materialize("https://cdn.example.com/generated.webp")

    stored = await store.get_file(file_hash)
    assert stored is not None
    assert stored.data == b"remote"
    assert stored.mime_type == "image/webp"


@pytest.mark.asyncio
async def test_materializer_raises_for_failed_fetch(store: InMemoryMessageStore) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda _request: httpx.Response(404))) as client:
        materializer = AttachmentMaterializer(store, http_client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await materializer.materialize("https://cdn.example.com/missing.png")


@pytest.mark.asyncio
async def test_hash_to_content_part(store: InMemoryMessageStore) -> None:
    image_hash = await store.put_file(b"img", "image/png")
    pdf_hash = await store.put_file(b"%PDF", "application/pdf", name="notes.pdf")
    text_hash = await store.put_file(b"plain", "text/plain")

    image_part = await hash_to_content_part(store, image_hash)
    pdf_part = await hash_to_content_part(store, pdf_hash)

    assert image_part is not None and image_part["type"] == "image_url"
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    assert pdf_part is not None and pdf_part["file"]["filename"] == "notes.pdf"
    assert await hash_to_content_part(store, text_hash) is None
    assert await hash_to_content_part(store, "missing") is None
