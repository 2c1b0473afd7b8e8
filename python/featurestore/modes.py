"""
Mode tables - which feature keys are in scope per media class and mode.

Each mode is a superset of the one below it:
    minimal ⊆ standard ⊆ maximal
"""

from typing import Dict, FrozenSet, Iterable, Optional

from .models import MediaClass, Mode, ResourceKind


# Media types outside text/* that are still treated as text.
TEXT_LIKE_TYPES = frozenset({
    "application/json",
    "application/javascript",
    "application/x-javascript",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/x-sh",
    "application/toml",
    "text/typescript",
})

DIRECTORY_MEDIA_TYPE = "inode/directory"

# Stored on a directory by indexing passes, not by extraction
INDEX_METADATA_KEY = "directory.index_metadata"

# Stored on a directory after its files were extracted
EXTRACTION_SUMMARY_KEY = "extraction.summary"

EMBEDDING_PREFIX = "embedding."


def _tiers(minimal: Iterable[str], standard: Iterable[str], maximal: Iterable[str]) -> Dict[Mode, FrozenSet[str]]:
    """Build cumulative key sets from per-tier additions."""
    m = frozenset(minimal)
    s = m | frozenset(standard)
    return {
        Mode.MINIMAL: m,
        Mode.STANDARD: s,
        Mode.MAXIMAL: s | frozenset(maximal),
    }


MODE_KEYS: Dict[MediaClass, Dict[Mode, FrozenSet[str]]] = {
    MediaClass.TEXT: _tiers(
        minimal=["text.content", "text.word_count", "text.line_count", "text.char_count"],
        standard=[],
        maximal=["text.keywords"],
    ),
    MediaClass.DIRECTORY: _tiers(
        minimal=["directory.file_count", "directory.subdirectory_count", "directory.total_size"],
        standard=["directory.metadata"],
        maximal=["directory.extensions", "directory.largest_files"],
    ),
    MediaClass.IMAGE: _tiers(
        minimal=["image.dimensions", "image.format"],
        standard=["image.thumbnail.small", "image.thumbnail.medium"],
        maximal=["image.thumbnail.large", "image.dominant_colors"],
    ),
    MediaClass.VIDEO: _tiers(
        minimal=["video.dimensions", "video.duration"],
        standard=["video.snapshot_50"],
        maximal=[f"video.snapshot_{p}" for p in range(0, 100, 10)],
    ),
    MediaClass.OTHER: _tiers(minimal=[], standard=[], maximal=[]),
}


def classify(media_type: Optional[str], kind: Optional[ResourceKind] = None) -> MediaClass:
    """Map a media type (and resource kind) onto a MediaClass."""
    if kind == ResourceKind.DIRECTORY:
        return MediaClass.DIRECTORY
    media_type = (media_type or "").lower()
    if media_type == DIRECTORY_MEDIA_TYPE:
        return MediaClass.DIRECTORY
    if media_type.startswith("image/"):
        return MediaClass.IMAGE
    if media_type.startswith("video/"):
        return MediaClass.VIDEO
    if media_type.startswith("text/") or media_type in TEXT_LIKE_TYPES:
        return MediaClass.TEXT
    return MediaClass.OTHER


def expected_keys(media_class: MediaClass, mode: Mode) -> FrozenSet[str]:
    """Feature keys in scope for a media class under a mode."""
    return MODE_KEYS[media_class][mode]


def is_extraction_key(media_class: MediaClass, key: str) -> bool:
    """
    True when extracting a resource of media_class can produce key.

    Only these keys count as cached features of the resource; anything else
    stored under its identity (e.g. an indexing summary) does not.
    """
    if key.startswith(EMBEDDING_PREFIX):
        return True
    if media_class == MediaClass.DIRECTORY and key == EXTRACTION_SUMMARY_KEY:
        return True
    return key in MODE_KEYS[media_class][Mode.MAXIMAL]
