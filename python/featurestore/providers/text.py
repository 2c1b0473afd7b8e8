"""
Text provider for documents, code and structured text (JSON, YAML, ...).
"""

import re
from collections import Counter
from typing import FrozenSet, List, Optional

from ..config import get_config, StoreConfig
from ..models import FeatureRecord, LoadedResource, ValueKind
from ..modes import TEXT_LIKE_TYPES
from .base import ThreadedProvider


# Words ignored by text.keywords
STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
    "has", "have", "if", "in", "into", "is", "it", "its", "not", "of", "on",
    "or", "that", "the", "this", "to", "was", "were", "will", "with",
})

_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9_'-]{2,}")


class TextStatsProvider(ThreadedProvider):
    """Content preview, word/line/char counts and keywords."""

    def __init__(self, config: StoreConfig | None = None, executor=None):
        super().__init__(executor)
        self.config = config or get_config()

    @property
    def name(self) -> str:
        return "text-stats"

    @property
    def media_types(self) -> List[str]:
        return ["text/*", *sorted(TEXT_LIKE_TYPES)]

    @property
    def feature_keys(self) -> List[str]:
        return [
            "text.content", "text.word_count", "text.line_count",
            "text.char_count", "text.keywords",
        ]

    def extract_sync(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]],
        resource: Optional[LoadedResource],
    ) -> List[FeatureRecord]:
        text = content.decode("utf-8", errors="replace")
        records: List[FeatureRecord] = []

        if self.wants("text.content", keys):
            limit = self.config.text_content_limit
            records.append(FeatureRecord(
                key="text.content",
                value=text[:limit],
                kind=ValueKind.TEXT,
                ttl=ttl,
                metadata={"truncated": len(text) > limit},
            ))

        if self.wants("text.word_count", keys):
            records.append(FeatureRecord(
                key="text.word_count", value=len(text.split()), kind=ValueKind.NUMBER, ttl=ttl,
            ))

        if self.wants("text.line_count", keys):
            records.append(FeatureRecord(
                key="text.line_count", value=len(text.split("\n")), kind=ValueKind.NUMBER, ttl=ttl,
            ))

        if self.wants("text.char_count", keys):
            records.append(FeatureRecord(
                key="text.char_count", value=len(text), kind=ValueKind.NUMBER, ttl=ttl,
            ))

        if self.wants("text.keywords", keys):
            records.append(FeatureRecord(
                key="text.keywords",
                value=self._keywords(text),
                kind=ValueKind.JSON,
                ttl=ttl,
            ))

        return records

    def _keywords(self, text: str) -> List[dict]:
        """Most frequent non-stopword terms."""
        counts = Counter(
            w for w in (m.group(0).lower() for m in _WORD_RE.finditer(text))
            if w not in STOPWORDS
        )
        return [
            {"word": word, "count": count}
            for word, count in counts.most_common(self.config.keyword_count)
        ]
