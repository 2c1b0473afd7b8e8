"""
Data Models - Type definitions for the feature store.

These dataclasses represent the data flowing between the fingerprinter,
cache, orchestrator and indexer, ensuring clear interfaces between modules.
"""

import base64
import fnmatch
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import InvalidInput


class ResourceKind(Enum):
    """Kind of tracked resource."""
    FILE = "file"
    URL = "url"
    DIRECTORY = "directory"


class ValueKind(Enum):
    """How a feature value is serialized."""
    TEXT = "text"
    NUMBER = "number"
    BINARY = "binary"         # base64 of raw bytes
    EMBEDDING = "embedding"   # base64 of float32 vector bytes
    JSON = "json"


class Mode(Enum):
    """Breadth of feature keys in scope for one extraction call."""
    MINIMAL = "minimal"
    STANDARD = "standard"
    MAXIMAL = "maximal"

    @classmethod
    def parse(cls, value: "Mode | str") -> "Mode":
        if isinstance(value, Mode):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidInput(
                f"Unknown mode: {value!r} (expected minimal, standard or maximal)"
            ) from None


class MediaClass(Enum):
    """Coarse media classification used to pick mode key sets."""
    DIRECTORY = "directory"
    IMAGE = "image"
    VIDEO = "video"
    TEXT = "text"
    OTHER = "other"


class EventType(Enum):
    """Progress events emitted by streaming extraction."""
    STARTED = "started"
    PROVIDER_STARTED = "provider_started"
    PROVIDER_COMPLETED = "provider_completed"
    PROVIDER_ERROR = "provider_error"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------

def encode_value(value: Any, kind: ValueKind) -> str:
    """Serialize a provider value to the text stored in the cache."""
    if kind == ValueKind.BINARY:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return base64.b64encode(bytes(value)).decode("ascii")
        return str(value)
    if kind == ValueKind.EMBEDDING:
        if isinstance(value, str):
            return value
        vector = np.asarray(value, dtype=np.float32)
        return base64.b64encode(vector.tobytes()).decode("ascii")
    if kind == ValueKind.JSON:
        return json.dumps(value)
    return str(value)


def decode_value(raw: str, kind: ValueKind) -> Any:
    """Inverse of encode_value."""
    if kind == ValueKind.BINARY:
        return base64.b64decode(raw)
    if kind == ValueKind.EMBEDDING:
        return np.frombuffer(base64.b64decode(raw), dtype=np.float32)
    if kind == ValueKind.JSON:
        return json.loads(raw)
    if kind == ValueKind.NUMBER:
        try:
            return int(raw)
        except ValueError:
            return float(raw)
    return raw


# ---------------------------------------------------------------------------
# Resources and features
# ---------------------------------------------------------------------------

@dataclass
class Resource:
    """
    A tracked file, URL or directory.

    Identity is the canonical URL (file:///abs/path or http(s)://...).
    Directories carry no checksum.
    """
    url: str
    kind: ResourceKind
    last_processed: int = 0
    checksum: Optional[str] = None
    size: Optional[int] = None
    media_type: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def path(self) -> Optional[Path]:
        """Local filesystem path for file:// identities."""
        if self.url.startswith("file://"):
            return Path(self.url[len("file://"):])
        return None


@dataclass
class LoadedResource(Resource):
    """Resource plus the bytes the fingerprinter read."""
    content: bytes = b""

    def to_resource(self) -> Resource:
        return Resource(
            url=self.url,
            kind=self.kind,
            last_processed=self.last_processed,
            checksum=self.checksum,
            size=self.size,
            media_type=self.media_type,
        )


@dataclass
class FeatureRecord:
    """A single value produced by a capability provider."""
    key: str
    value: Any
    kind: ValueKind = ValueKind.TEXT
    ttl: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    provider: Optional[str] = None  # Filled in by the orchestrator


@dataclass
class Feature:
    """
    A cached feature row.

    `value` is the serialized text form; use decoded() for the Python value.
    """
    resource_url: str
    key: str
    value: str
    kind: ValueKind
    provider: str
    generated_at: int
    ttl: int
    expires_at: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def decoded(self) -> Any:
        return decode_value(self.value, self.kind)


@dataclass
class ProviderRegistration:
    """
    Routing entry for a capability provider.

    media_types and feature_keys are glob patterns ("image/*", "embedding.*").
    Lower priority values run first.
    """
    name: str
    media_types: List[str]
    feature_keys: List[str]
    priority: int = 100
    enabled: bool = True
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def accepts(self, media_type: Optional[str]) -> bool:
        if not media_type:
            return False
        media_type = media_type.lower()
        return any(fnmatch.fnmatchcase(media_type, p.lower()) for p in self.media_types)

    def produces(self, key: str) -> bool:
        return any(fnmatch.fnmatchcase(key, p) for p in self.feature_keys)

    def covered_keys(self, keys) -> set:
        """Subset of `keys` this provider is registered to produce."""
        return {k for k in keys if self.produces(k)}


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

def _check_ttl(ttl: Optional[int]) -> Optional[int]:
    if ttl is None:
        return None
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
        raise InvalidInput(f"ttl must be a positive integer, got {ttl!r}")
    return ttl


@dataclass
class ExtractOptions:
    """Options for one extraction request."""
    mode: Mode = Mode.STANDARD
    ttl: Optional[int] = None              # None = config.default_ttl
    force: bool = False
    include_embeddings: bool = False
    update_missing: bool = False
    providers: Optional[List[str]] = None  # Restrict to these provider names

    def __post_init__(self):
        self.mode = Mode.parse(self.mode)
        self.ttl = _check_ttl(self.ttl)
        if self.providers is not None:
            if isinstance(self.providers, str) or not all(
                isinstance(p, str) and p for p in self.providers
            ):
                raise InvalidInput(f"providers must be a list of names, got {self.providers!r}")
            self.providers = list(self.providers)


@dataclass
class FeatureFilter:
    """Query filter; every given field must match."""
    resource_id: Optional[str] = None
    keys: Optional[List[str]] = None
    providers: Optional[List[str]] = None
    include_expired: bool = False


@dataclass
class IndexOptions:
    """Options for one directory indexing pass."""
    recursive: bool = False
    extensions: Optional[List[str]] = None  # Allow-list, e.g. [".txt", ".md"]
    mode: Mode = Mode.STANDARD
    max_files: Optional[int] = None         # None = config.index_max_files
    ttl: Optional[int] = None               # None = config.index_ttl
    concurrency: Optional[int] = None       # None = config.index_concurrency
    include_embeddings: bool = False

    def __post_init__(self):
        self.mode = Mode.parse(self.mode)
        self.ttl = _check_ttl(self.ttl)
        for name in ("max_files", "concurrency"):
            value = getattr(self, name)
            if value is not None and (
                isinstance(value, bool) or not isinstance(value, int) or value <= 0
            ):
                raise InvalidInput(f"{name} must be a positive integer, got {value!r}")
        if self.extensions is not None:
            self.extensions = [
                (e if e.startswith(".") else f".{e}").lower() for e in self.extensions
            ]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class FileInfo:
    """
    Basic file information from the directory listing.

    Only what stat() gives us, without reading file content.
    """
    path: Path
    name: str
    extension: str
    size: int
    mtime: float

    @classmethod
    def from_path(cls, path: Path, mtime: float, size: int) -> "FileInfo":
        return cls(
            path=path,
            name=path.name,
            extension=path.suffix.lower(),
            size=size,
            mtime=mtime,
        )


@dataclass
class DirectoryListing:
    """Result of listing a directory tree."""
    files: List[FileInfo]
    skipped: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class IndexResult:
    """Outcome of a directory indexing pass."""
    indexed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Indexed {len(self.indexed)} files "
            f"({len(self.skipped)} skipped, "
            f"{len(self.errors)} errors) "
            f"in {self.duration_seconds:.1f}s"
        )


@dataclass
class CacheStats:
    """Counts reported by FeatureCache.stats()."""
    resource_count: int = 0
    feature_count: int = 0
    expired_count: int = 0
    enabled_provider_count: int = 0


@dataclass
class ExtractionEvent:
    """One progress event from streaming extraction."""
    type: EventType
    resource: str
    provider: Optional[str] = None
    features: List[Feature] = field(default_factory=list)
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
