"""
Fingerprinter Tests - Verify resource loading and checksums.

Tests:
- Local files: checksum, media type, identity
- Directories: no checksum, entry count as size
- Size cap and missing files
- URLs served by a local aiohttp server
"""

import dataclasses
import hashlib
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from featurestore.errors import InvalidInput, NotFound, TooLarge
from featurestore.fingerprinter import (
    ResourceFingerprinter, canonical_locator, guess_media_type, sniff_media_type,
)
from featurestore.models import ResourceKind


@pytest_asyncio.fixture
async def fingerprinter(test_config):
    fp = ResourceFingerprinter(test_config)
    yield fp
    fp.close()


@pytest_asyncio.fixture
async def http_server():
    """Local HTTP server with a few canned responses."""
    async def doc(request):
        return web.Response(text="hello world", content_type="text/plain")

    async def big(request):
        return web.Response(body=b"x" * 4096, content_type="application/octet-stream")

    async def missing(request):
        raise web.HTTPNotFound()

    app = web.Application()
    app.router.add_get("/doc.txt", doc)
    app.router.add_get("/big.bin", big)
    app.router.add_get("/missing", missing)

    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


class TestLocalFiles:
    """Tests for loading files and directories."""

    @pytest.mark.asyncio
    async def test_checksum_matches_content(self, fingerprinter, docs_dir):
        """Checksum is SHA-256 of the full content."""
        doc = docs_dir / "doc.txt"
        doc.write_text("hello world")

        resource = await fingerprinter.load(str(doc))

        assert resource.checksum == hashlib.sha256(b"hello world").hexdigest()
        assert resource.size == 11
        assert resource.content == b"hello world"
        assert resource.kind == ResourceKind.FILE
        assert resource.media_type == "text/plain"
        assert resource.url == f"file://{doc}"

    @pytest.mark.asyncio
    async def test_same_content_same_checksum(self, fingerprinter, docs_dir):
        """Identical content gives identical checksums across files."""
        a = docs_dir / "a.txt"
        b = docs_dir / "b.txt"
        a.write_text("same content")
        b.write_text("same content")

        ra = await fingerprinter.load(str(a))
        rb = await fingerprinter.load(str(b))

        assert ra.checksum == rb.checksum
        assert ra.url != rb.url

    @pytest.mark.asyncio
    async def test_file_url_locator(self, fingerprinter, docs_dir):
        """file:// locators resolve to the same identity as plain paths."""
        doc = docs_dir / "doc.txt"
        doc.write_text("hello")

        resource = await fingerprinter.load(f"file://{doc}")
        assert resource.url == f"file://{doc}"

    @pytest.mark.asyncio
    async def test_missing_file(self, fingerprinter, docs_dir):
        with pytest.raises(NotFound):
            await fingerprinter.load(str(docs_dir / "nope.txt"))

    @pytest.mark.asyncio
    async def test_too_large(self, test_config, docs_dir):
        """Files above the size cap are rejected."""
        config = dataclasses.replace(test_config, max_resource_size=10)
        fp = ResourceFingerprinter(config)
        big = docs_dir / "big.txt"
        big.write_text("x" * 11)

        try:
            with pytest.raises(TooLarge) as exc_info:
                await fp.load(str(big))
        finally:
            fp.close()

        assert exc_info.value.size == 11
        assert exc_info.value.limit == 10

    @pytest.mark.asyncio
    async def test_size_at_cap_is_allowed(self, test_config, docs_dir):
        config = dataclasses.replace(test_config, max_resource_size=10)
        fp = ResourceFingerprinter(config)
        exact = docs_dir / "exact.txt"
        exact.write_text("x" * 10)

        try:
            resource = await fp.load(str(exact))
        finally:
            fp.close()

        assert resource.size == 10

    @pytest.mark.asyncio
    async def test_directory(self, fingerprinter, sample_files, docs_dir):
        """Directories carry no checksum and report their entry count."""
        resource = await fingerprinter.load(str(docs_dir))

        assert resource.kind == ResourceKind.DIRECTORY
        assert resource.checksum is None
        assert resource.media_type == "inode/directory"
        assert resource.size == len(list(docs_dir.iterdir()))

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self, fingerprinter):
        with pytest.raises(InvalidInput):
            await fingerprinter.load("ftp://example.com/file.txt")

    @pytest.mark.asyncio
    async def test_empty_locator(self, fingerprinter):
        with pytest.raises(InvalidInput):
            await fingerprinter.load("   ")


class TestUrls:
    """Tests for fetching over HTTP."""

    @pytest.mark.asyncio
    async def test_fetch_text(self, fingerprinter, http_server):
        url = str(http_server.make_url("/doc.txt"))

        resource = await fingerprinter.load(url)

        assert resource.kind == ResourceKind.URL
        assert resource.url == url
        assert resource.media_type == "text/plain"
        assert resource.checksum == hashlib.sha256(b"hello world").hexdigest()

    @pytest.mark.asyncio
    async def test_http_error_is_not_found(self, fingerprinter, http_server):
        with pytest.raises(NotFound):
            await fingerprinter.load(str(http_server.make_url("/missing")))

    @pytest.mark.asyncio
    async def test_body_over_cap(self, test_config, http_server):
        config = dataclasses.replace(test_config, max_resource_size=1024)
        fp = ResourceFingerprinter(config)
        try:
            with pytest.raises(TooLarge):
                await fp.load(str(http_server.make_url("/big.bin")))
        finally:
            fp.close()


class TestMediaTypes:
    """Tests for media type detection and identity."""

    def test_extension_overrides(self):
        assert guess_media_type(Path("app.ts")) == "text/typescript"
        assert guess_media_type(Path("config.yaml")) == "application/x-yaml"
        assert guess_media_type(Path("data.json")) == "application/json"

    def test_known_extension(self):
        assert guess_media_type(Path("photo.png")) == "image/png"

    def test_sniff_text_and_binary(self):
        assert sniff_media_type(b"plain words") == "text/plain"
        assert sniff_media_type(b"\x00\x01\x02binary") == "application/octet-stream"

    def test_unknown_extension_sniffs_content(self):
        assert guess_media_type(Path("notes.unknownext"), b"just text") == "text/plain"

    def test_canonical_locator(self, docs_dir):
        assert canonical_locator(str(docs_dir / "a.txt")) == f"file://{docs_dir}/a.txt"
        assert canonical_locator("https://example.com/x?y=1") == "https://example.com/x?y=1"

    def test_canonical_locator_rejects_other_schemes(self):
        with pytest.raises(InvalidInput):
            canonical_locator("s3://bucket/key")
