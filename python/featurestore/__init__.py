"""
Feature Store - Feature extraction with a durable TTL cache.

Modules:
    - config: Centralized configuration
    - fingerprinter: Resource loading, size cap, SHA-256 checksum, media type
    - cache: SQLite feature cache with TTL expiry
    - registry: Media type to capability provider routing
    - modes: Feature keys in scope per media class and mode
    - providers: Text, image, video, directory and embedding providers
    - orchestrator: Cache-aware extraction (main entry point)
    - scanner: Directory listing with skip rules
    - indexer: Directory indexing and the background queue
    - store: FeatureStore facade and CLI

Extraction Flow:
    Load → Checksum → Cache hit? → Select keys (mode) → Providers → Persist

Usage:
    from featurestore import FeatureStore

    async with FeatureStore() as store:
        features = await store.extract("notes/doc.txt", mode="minimal")
"""

from .errors import (
    ExtractionFailed, FeatureStoreError, InvalidInput, NotFound, StorageError, TooLarge,
)
from .models import ExtractOptions, Feature, IndexOptions, IndexResult, Mode
from .store import FeatureStore, extract_features

__all__ = [
    "FeatureStore",
    "extract_features",
    "ExtractOptions",
    "IndexOptions",
    "IndexResult",
    "Feature",
    "Mode",
    "FeatureStoreError",
    "NotFound",
    "TooLarge",
    "ExtractionFailed",
    "InvalidInput",
    "StorageError",
]
