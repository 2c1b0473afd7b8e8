"""
Capability providers that turn resource content into features.
"""

from concurrent.futures import Executor
from typing import List, Optional

from ..config import get_config, StoreConfig
from .base import CapabilityProvider, ThreadedProvider
from .directory import DirectoryProvider
from .embedding import EmbeddingProvider
from .image import ImageProvider
from .text import TextStatsProvider
from .video import VideoProvider


def default_providers(
    config: StoreConfig | None = None,
    executor: Optional[Executor] = None,
) -> List[CapabilityProvider]:
    """The built-in providers registered by every FeatureStore."""
    config = config or get_config()
    return [
        TextStatsProvider(config, executor),
        ImageProvider(config, executor),
        VideoProvider(config, executor),
        DirectoryProvider(config, executor),
        EmbeddingProvider(config, executor),
    ]


__all__ = [
    "CapabilityProvider",
    "ThreadedProvider",
    "DirectoryProvider",
    "EmbeddingProvider",
    "ImageProvider",
    "TextStatsProvider",
    "VideoProvider",
    "default_providers",
]
