"""
Embedding provider - Batch text-to-vector embedding.

Chunks text with a sliding window, embeds the chunks with
sentence-transformers and stores one vector per chunk plus their mean as
the document vector. Only runs when a caller asks for embeddings.
"""

import importlib.util
import logging
import threading
from typing import FrozenSet, List, Optional

import numpy as np

from ..config import get_config, StoreConfig
from ..models import FeatureRecord, LoadedResource, ValueKind
from ..modes import TEXT_LIKE_TYPES
from .base import ThreadedProvider


logger = logging.getLogger(__name__)

# Shorter text carries too little signal to embed
MIN_TEXT_LENGTH = 10


class EmbeddingProvider(ThreadedProvider):
    """
    Sentence-transformers embedding generator.

    Features:
    - Lazy model loading
    - Batch processing
    - Normalized vectors (cosine similarity = dot product)
    """

    enrichment = True
    priority = 200

    def __init__(self, config: StoreConfig | None = None, executor=None):
        super().__init__(executor)
        self.config = config or get_config()
        self._model = None
        self._model_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "embedding"

    @property
    def media_types(self) -> List[str]:
        return ["text/*", *sorted(TEXT_LIKE_TYPES)]

    @property
    def feature_keys(self) -> List[str]:
        return ["embedding.*"]

    def is_available(self) -> bool:
        return importlib.util.find_spec("sentence_transformers") is not None

    def _get_model(self):
        """Lazy-load the embedding model."""
        with self._model_lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(self.config.embedding_model, device="cpu")
                logger.info(
                    f"Loaded embedding model {self.config.embedding_model} "
                    f"(dim={self._model.get_sentence_embedding_dimension()})"
                )
        return self._model

    def embed_texts(self, texts: List[str]) -> np.ndarray:
        """
        Embed multiple texts in batches.

        Returns:
            NumPy array of shape (len(texts), dimension)
        """
        model = self._get_model()
        batch_size = self.config.embedding_batch_size
        all_embeddings = []

        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]
            embeddings = model.encode(
                batch,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
            all_embeddings.append(embeddings)

        return np.vstack(all_embeddings).astype(np.float32)

    def extract_sync(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]],
        resource: Optional[LoadedResource],
    ) -> List[FeatureRecord]:
        text = content.decode("utf-8", errors="replace")
        if len(text.strip()) < MIN_TEXT_LENGTH:
            return []

        chunks = chunk_text(text, self.config.chunk_size, self.config.chunk_overlap)
        if not chunks:
            return []

        vectors = self.embed_texts(chunks)
        dimensions = int(vectors.shape[1])
        records: List[FeatureRecord] = []

        for i, (chunk, vector) in enumerate(zip(chunks, vectors)):
            key = f"embedding.chunk_{i}"
            if not self.wants(key, keys):
                continue
            records.append(FeatureRecord(
                key=key,
                value=vector,
                kind=ValueKind.EMBEDDING,
                ttl=ttl,
                metadata={
                    "chunk_index": i,
                    "total_chunks": len(chunks),
                    "chunk_length": len(chunk),
                    "dimensions": dimensions,
                    "model": self.config.embedding_model,
                },
            ))

        if self.wants("embedding.document", keys):
            document = vectors.mean(axis=0)
            norm = np.linalg.norm(document)
            if norm > 0:
                document = document / norm
            records.append(FeatureRecord(
                key="embedding.document",
                value=document.astype(np.float32),
                kind=ValueKind.EMBEDDING,
                ttl=ttl,
                metadata={
                    "total_chunks": len(chunks),
                    "dimensions": dimensions,
                    "model": self.config.embedding_model,
                },
            ))

        return records


def chunk_text(text: str, chunk_size: int, overlap: int) -> List[str]:
    """
    Split text into overlapping chunks.

    Uses sliding window with overlap for context preservation.
    """
    if len(text) <= chunk_size:
        return [text.strip()] if text.strip() else []

    chunks = []
    pos = 0

    while pos < len(text):
        end = pos + chunk_size
        chunk = text[pos:end].strip()

        if chunk:
            chunks.append(chunk)

        # Move forward by (chunk_size - overlap)
        pos = end - overlap

        # Prevent infinite loop
        if pos >= len(text) - overlap:
            break

    return chunks
