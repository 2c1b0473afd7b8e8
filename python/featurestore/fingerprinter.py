"""
Fingerprinter - Load resources and compute content checksums.

Reads a file (on a thread pool) or fetches a URL (aiohttp), enforces the
size cap, hashes the full payload with SHA-256 and classifies its media type.
No caching happens at this layer.
"""

import asyncio
import hashlib
import logging
import mimetypes
import os
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiohttp

from .config import get_config, StoreConfig
from .errors import InvalidInput, NotFound, TooLarge
from .models import LoadedResource, ResourceKind
from .modes import DIRECTORY_MEDIA_TYPE


logger = logging.getLogger(__name__)


# Extension overrides for text-like source formats that mimetypes gets wrong
# or does not know on every platform.
MEDIA_TYPE_OVERRIDES = {
    ".ts": "text/typescript",
    ".tsx": "text/typescript",
    ".js": "application/javascript",
    ".jsx": "application/javascript",
    ".mjs": "application/javascript",
    ".py": "text/x-python",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".json": "application/json",
    ".yaml": "application/x-yaml",
    ".yml": "application/x-yaml",
    ".toml": "application/toml",
    ".sh": "application/x-sh",
    ".rs": "text/x-rust",
    ".go": "text/x-go",
    ".sql": "text/x-sql",
}

# Bytes inspected when sniffing files with an unknown extension
SNIFF_BYTES = 8192


def is_url(locator: str) -> bool:
    """True for http(s) locators."""
    return urlparse(locator).scheme in ("http", "https")


def canonical_locator(locator: str) -> str:
    """
    Canonical resource identity for a locator, without touching the network
    or reading the file.

    http(s) URLs are returned unchanged; file:// URLs and plain paths become
    file:///absolute/path.
    """
    if not isinstance(locator, str) or not locator.strip():
        raise InvalidInput(f"Locator must be a non-empty string, got {locator!r}")

    locator = locator.strip()
    if is_url(locator):
        return locator

    return f"file://{_local_path(locator)}"


def _local_path(locator: str) -> Path:
    """Resolve a file:// URL or plain path to an absolute Path."""
    parsed = urlparse(locator)
    if parsed.scheme == "file":
        raw = unquote(parsed.path)
    elif parsed.scheme and len(parsed.scheme) > 1:
        # Single-letter schemes are Windows drive letters, not URLs
        raise InvalidInput(f"Unsupported locator scheme: {parsed.scheme!r}")
    else:
        raw = locator
    return Path(os.path.abspath(os.path.expanduser(raw)))


def guess_media_type(path: Path, head: bytes = b"") -> str:
    """
    Media type from extension, with overrides for source formats and a
    content sniff for unknown extensions.
    """
    ext = path.suffix.lower()
    if ext in MEDIA_TYPE_OVERRIDES:
        return MEDIA_TYPE_OVERRIDES[ext]

    guessed, _ = mimetypes.guess_type(path.name)
    if guessed:
        return guessed

    return sniff_media_type(head)


def sniff_media_type(head: bytes) -> str:
    """text/plain for NUL-free UTF-8, octet-stream otherwise."""
    if not head:
        return "text/plain"
    if b"\x00" in head:
        return "application/octet-stream"
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte sequence cut at the sniff boundary is still text
        if e.start < len(head) - 3:
            return "application/octet-stream"
    return "text/plain"


class ResourceFingerprinter:
    """
    Loads files and URLs into LoadedResource objects.

    File reads and hashing run on a thread pool so large files don't
    block the event loop.
    """

    def __init__(self, config: StoreConfig | None = None):
        self.config = config or get_config()
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.executor_workers,
                thread_name_prefix="fingerprint"
            )
        return self._executor

    async def load(self, locator: str) -> LoadedResource:
        """
        Load a resource and compute its fingerprint.

        Raises:
            InvalidInput: unsupported scheme or empty locator
            NotFound: missing file, failed fetch or non-2xx response
            TooLarge: payload above config.max_resource_size
        """
        if not isinstance(locator, str) or not locator.strip():
            raise InvalidInput(f"Locator must be a non-empty string, got {locator!r}")

        locator = locator.strip()
        if is_url(locator):
            return await self._load_url(locator)

        path = _local_path(locator)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), self._load_path_sync, path)

    def _load_path_sync(self, path: Path) -> LoadedResource:
        """Synchronous file load (runs in thread pool)."""
        try:
            stat = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            raise NotFound(f"File not found: {path}", context={"path": str(path)}) from None
        except PermissionError as e:
            raise NotFound(f"Cannot access {path}: {e}", context={"path": str(path)}) from e

        now = int(time.time())

        if path.is_dir():
            try:
                entry_count = sum(1 for _ in os.scandir(path))
            except OSError as e:
                raise NotFound(f"Cannot list directory {path}: {e}") from e
            return LoadedResource(
                url=f"file://{path}",
                kind=ResourceKind.DIRECTORY,
                last_processed=now,
                checksum=None,
                size=entry_count,
                media_type=DIRECTORY_MEDIA_TYPE,
            )

        limit = self.config.max_resource_size
        if stat.st_size > limit:
            raise TooLarge(
                f"File exceeds maximum size limit: {stat.st_size} > {limit} bytes",
                size=stat.st_size,
                limit=limit,
                context={"path": str(path)},
            )

        try:
            content = path.read_bytes()
        except OSError as e:
            raise NotFound(f"Failed to read {path}: {e}", context={"path": str(path)}) from e

        # File may have grown between stat() and read
        if len(content) > limit:
            raise TooLarge(
                f"File exceeds maximum size limit: {len(content)} > {limit} bytes",
                size=len(content),
                limit=limit,
            )

        media_type = guess_media_type(path, content[:SNIFF_BYTES])
        logger.info(f"Loaded file: {path} ({len(content)} bytes, {media_type})")

        return LoadedResource(
            url=f"file://{path}",
            kind=ResourceKind.FILE,
            last_processed=now,
            checksum=hashlib.sha256(content).hexdigest(),
            size=len(content),
            media_type=media_type,
            content=content,
        )

    async def _load_url(self, url: str) -> LoadedResource:
        """Fetch a URL, enforcing the size cap on header and body."""
        limit = self.config.max_resource_size
        timeout = aiohttp.ClientTimeout(total=self.config.fetch_timeout)
        headers = {"User-Agent": self.config.user_agent}

        logger.info(f"Fetching URL: {url}")

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=headers) as response:
                    if response.status < 200 or response.status >= 300:
                        raise NotFound(
                            f"HTTP {response.status}: {response.reason}",
                            context={"url": url, "status": response.status},
                        )

                    content_length = response.headers.get("Content-Length")
                    if content_length and content_length.isdigit() and int(content_length) > limit:
                        raise TooLarge(
                            f"Content exceeds maximum size limit: {content_length} bytes",
                            size=int(content_length),
                            limit=limit,
                            context={"url": url},
                        )

                    content = await self._read_capped(response, limit, url)
                    content_type = response.headers.get("Content-Type", "")
        except asyncio.TimeoutError:
            raise NotFound(
                f"Request timeout after {self.config.fetch_timeout}s: {url}",
                context={"url": url},
            ) from None
        except aiohttp.ClientError as e:
            raise NotFound(f"Failed to fetch URL {url}: {e}", context={"url": url}) from e

        media_type = content_type.split(";")[0].strip().lower() or "application/octet-stream"
        loop = asyncio.get_running_loop()
        checksum = await loop.run_in_executor(
            self._get_executor(), lambda: hashlib.sha256(content).hexdigest()
        )

        logger.info(f"Loaded URL: {url} ({len(content)} bytes, {media_type})")

        return LoadedResource(
            url=url,
            kind=ResourceKind.URL,
            last_processed=int(time.time()),
            checksum=checksum,
            size=len(content),
            media_type=media_type,
            content=content,
        )

    @staticmethod
    async def _read_capped(response: aiohttp.ClientResponse, limit: int, url: str) -> bytes:
        """Read the body in chunks, failing as soon as it passes the cap."""
        chunks = []
        total = 0
        async for chunk in response.content.iter_chunked(65536):
            total += len(chunk)
            if total > limit:
                raise TooLarge(
                    f"Content exceeds maximum size limit: more than {limit} bytes",
                    size=total,
                    limit=limit,
                    context={"url": url},
                )
            chunks.append(chunk)
        return b"".join(chunks)

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
