"""
Base class for all capability providers.
Each provider turns raw resource bytes of some media types into features.
"""

import asyncio
import functools
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from typing import FrozenSet, List, Optional

from ..models import FeatureRecord, LoadedResource, ProviderRegistration


class CapabilityProvider(ABC):
    """
    Base class for all capability providers.

    To add a new provider:
    1. Create a new class extending CapabilityProvider (or ThreadedProvider
       for blocking work)
    2. Implement name, media_types, feature_keys and extract
    3. Register it with FeatureStore.register_provider() or add it to
       default_providers()
    """

    # Lower values run first when several providers match
    priority: int = 100

    # Enrichment providers only run on request (include_embeddings) and
    # their failures never fail an extraction.
    enrichment: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique provider name, recorded on every feature it produces."""
        pass

    @property
    @abstractmethod
    def media_types(self) -> List[str]:
        """Media type patterns this provider accepts (e.g. 'image/*')."""
        pass

    @property
    @abstractmethod
    def feature_keys(self) -> List[str]:
        """Feature key patterns this provider can produce."""
        pass

    def registration(self) -> ProviderRegistration:
        """Default routing entry for this provider."""
        return ProviderRegistration(
            name=self.name,
            media_types=list(self.media_types),
            feature_keys=list(self.feature_keys),
            priority=self.priority,
            enabled=True,
        )

    def is_available(self) -> bool:
        """False when a required tool, library or credential is missing."""
        return True

    @abstractmethod
    async def extract(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]] = None,
        resource: Optional[LoadedResource] = None,
    ) -> List[FeatureRecord]:
        """
        Produce features from resource content.

        Args:
            content: Raw resource bytes (empty for directories)
            media_type: Media type reported by the fingerprinter
            ttl: Suggested TTL for produced features
            keys: Feature keys wanted by the caller (None = everything)
            resource: The loaded resource, for providers that need its path

        Returns:
            List of FeatureRecord; raising marks this provider as failed
        """
        pass

    @staticmethod
    def wants(key: str, keys: Optional[FrozenSet[str]]) -> bool:
        return keys is None or key in keys


class ThreadedProvider(CapabilityProvider):
    """
    Provider whose work is blocking (image decoding, subprocesses, model
    inference). extract_sync runs on a thread pool.
    """

    def __init__(self, executor: Optional[Executor] = None):
        self._executor = executor

    async def extract(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]] = None,
        resource: Optional[LoadedResource] = None,
    ) -> List[FeatureRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            functools.partial(self.extract_sync, content, media_type, ttl, keys, resource),
        )

    @abstractmethod
    def extract_sync(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]],
        resource: Optional[LoadedResource],
    ) -> List[FeatureRecord]:
        """Synchronous extraction (runs in thread pool)."""
        pass
