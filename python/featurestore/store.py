"""
FeatureStore - Main entry point for the feature store.

Wires the cache, provider registry, fingerprinter, orchestrator, indexer
and background queue together, and exposes the `featurestore` CLI.
"""

import asyncio
import json
import logging
import sys
import time
from typing import AsyncIterator, Callable, List, Optional

from .cache import FeatureCache
from .config import get_config, StoreConfig
from .context import ExtractionContext
from .errors import FeatureStoreError
from .fingerprinter import ResourceFingerprinter, canonical_locator
from .indexer import BackgroundIndexQueue, DirectoryIndexer
from .models import (
    CacheStats, ExtractionEvent, ExtractOptions, Feature, FeatureFilter,
    IndexOptions, IndexResult, ProviderRegistration, ValueKind,
)
from .orchestrator import ExtractionOrchestrator
from .providers import default_providers
from .providers.base import CapabilityProvider
from .registry import CapabilityRegistry


logger = logging.getLogger(__name__)


class FeatureStore:
    """
    Feature extraction with a durable TTL cache.

    Usage:
        async with FeatureStore() as store:
            features = await store.extract("notes/doc.txt", mode="minimal")
            result = await store.index_directory("notes", recursive=True)
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        providers: Optional[List[CapabilityProvider]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()

        self.cache = FeatureCache(self.config, clock=clock)
        self.registry = CapabilityRegistry(self.cache)
        for provider in (default_providers(self.config) if providers is None else providers):
            self.registry.register(provider)

        self.fingerprinter = ResourceFingerprinter(self.config)
        self.orchestrator = ExtractionOrchestrator(
            self.cache, self.registry, self.fingerprinter, self.config
        )
        self.indexer = DirectoryIndexer(self.cache, self.orchestrator, self.config)
        self.background = BackgroundIndexQueue(self.indexer)
        self.orchestrator.indexer = self.indexer
        self.orchestrator.background = self.background

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract(
        self,
        locator: str,
        options: Optional[ExtractOptions] = None,
        **kwargs,
    ) -> List[Feature]:
        """
        Extract (or fetch cached) features for a file path or URL.

        Keyword arguments build ExtractOptions when options is not given,
        e.g. extract(path, mode="maximal", ttl=600).
        """
        options = options or ExtractOptions(**kwargs)
        return await self.orchestrator.extract(locator, options, ExtractionContext(locator=locator))

    async def extract_stream(
        self,
        locator: str,
        options: Optional[ExtractOptions] = None,
        **kwargs,
    ) -> AsyncIterator[ExtractionEvent]:
        """Like extract(), yielding progress events."""
        options = options or ExtractOptions(**kwargs)
        async for event in self.orchestrator.extract_stream(
            locator, options, ExtractionContext(locator=locator)
        ):
            yield event

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    def query(
        self,
        resource: Optional[str] = None,
        keys: Optional[List[str]] = None,
        providers: Optional[List[str]] = None,
        include_expired: bool = False,
    ) -> List[Feature]:
        """Cached features matching every given filter."""
        return self.cache.query_features(FeatureFilter(
            resource_id=canonical_locator(resource) if resource else None,
            keys=keys,
            providers=providers,
            include_expired=include_expired,
        ))

    def update_ttl(self, resource: str, key: str, ttl: int) -> Feature:
        return self.cache.update_ttl(canonical_locator(resource), key, ttl)

    def stats(self) -> CacheStats:
        return self.cache.stats()

    def sweep_expired(self) -> int:
        return self.cache.sweep_expired()

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def register_provider(
        self,
        registration: ProviderRegistration,
        provider: Optional[CapabilityProvider] = None,
    ) -> None:
        """
        Register or replace a provider.

        Without an implementation only the routing is stored; it takes effect
        once an implementation with the same name is loaded.
        """
        if provider is None:
            self.registry.register_routing(registration)
        else:
            self.registry.register(provider, registration)

    def list_providers(
        self,
        enabled: Optional[bool] = None,
        media_type: Optional[str] = None,
    ) -> List[ProviderRegistration]:
        return self.cache.list_providers(enabled=enabled, media_type=media_type)

    def set_provider_enabled(self, name: str, enabled: bool) -> None:
        self.cache.set_provider_enabled(name, enabled)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_directory(
        self,
        path: str,
        options: Optional[IndexOptions] = None,
        **kwargs,
    ) -> IndexResult:
        """Index a directory now (not through the background queue)."""
        options = options or IndexOptions(**kwargs)
        return await self.indexer.index_directory(
            path, options, ExtractionContext(locator=path, origin="index")
        )

    def get_indexed_files(self, path: str) -> List[str]:
        return self.indexer.get_indexed_files(path)

    def should_index(self, path: str) -> bool:
        return self.indexer.should_index(path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self):
        """Stop background work and release resources."""
        await self.background.close()
        self.fingerprinter.close()
        self.cache.close()

    async def __aenter__(self) -> "FeatureStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


async def extract_features(
    locator: str,
    config: Optional[StoreConfig] = None,
    **kwargs,
) -> List[Feature]:
    """
    Convenience function to extract features with a throwaway store.

    Usage:
        features = await extract_features("report.txt", mode="maximal")
    """
    async with FeatureStore(config) as store:
        return await store.extract(locator, **kwargs)


def _feature_to_dict(feature: Feature) -> dict:
    value = feature.value
    if feature.kind == ValueKind.JSON:
        value = feature.decoded()
    elif feature.kind in (ValueKind.BINARY, ValueKind.EMBEDDING):
        value = f"<{feature.kind.value}: {len(value)} base64 chars>"
    elif feature.kind == ValueKind.NUMBER:
        value = feature.decoded()
    return {
        "key": feature.key,
        "value": value,
        "kind": feature.kind.value,
        "provider": feature.provider,
        "expires_at": feature.expires_at,
        "metadata": feature.metadata,
    }


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Feature extraction with a TTL cache")
    parser.add_argument("--db", help="Path to the SQLite database")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    p_extract = sub.add_parser("extract", help="Extract features for a file or URL")
    p_extract.add_argument("locator")
    p_extract.add_argument("--mode", default="standard", choices=["minimal", "standard", "maximal"])
    p_extract.add_argument("--ttl", type=int, help="Feature TTL in seconds")
    p_extract.add_argument("--force", action="store_true", help="Ignore cached features")
    p_extract.add_argument("--update-missing", action="store_true", help="Only compute missing keys")
    p_extract.add_argument("--embeddings", action="store_true", help="Also generate embeddings")
    p_extract.add_argument("--provider", action="append", dest="providers", help="Restrict to provider")

    p_query = sub.add_parser("query", help="Show cached features")
    p_query.add_argument("locator", nargs="?")
    p_query.add_argument("--key", action="append", dest="keys")
    p_query.add_argument("--include-expired", action="store_true")

    p_index = sub.add_parser("index", help="Index a directory")
    p_index.add_argument("directory")
    p_index.add_argument("--recursive", "-r", action="store_true")
    p_index.add_argument("--ext", action="append", dest="extensions", help="Extension allow-list")
    p_index.add_argument("--max-files", type=int)
    p_index.add_argument("--concurrency", type=int)

    sub.add_parser("stats", help="Show cache statistics")
    sub.add_parser("sweep", help="Delete expired features")

    p_providers = sub.add_parser("providers", help="List or toggle providers")
    p_providers.add_argument("--enable")
    p_providers.add_argument("--disable")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = StoreConfig.from_env()
    if args.db:
        config.db_path = args.db
        config.__post_init__()

    async def _main() -> int:
        async with FeatureStore(config) as store:
            if args.command == "extract":
                features = await store.extract(
                    args.locator,
                    mode=args.mode,
                    ttl=args.ttl,
                    force=args.force,
                    update_missing=args.update_missing,
                    include_embeddings=args.embeddings,
                    providers=args.providers,
                )
                print(json.dumps([_feature_to_dict(f) for f in features], indent=2))

            elif args.command == "query":
                features = store.query(args.locator, keys=args.keys, include_expired=args.include_expired)
                print(json.dumps([_feature_to_dict(f) for f in features], indent=2))

            elif args.command == "index":
                result = await store.index_directory(
                    args.directory,
                    recursive=args.recursive,
                    extensions=args.extensions,
                    max_files=args.max_files,
                    concurrency=args.concurrency,
                )
                print(result)

            elif args.command == "stats":
                stats = store.stats()
                print(json.dumps(stats.__dict__, indent=2))

            elif args.command == "sweep":
                print(f"Removed {store.sweep_expired()} expired features")

            elif args.command == "providers":
                if args.enable:
                    store.set_provider_enabled(args.enable, True)
                if args.disable:
                    store.set_provider_enabled(args.disable, False)
                for reg in store.list_providers():
                    status = "enabled" if reg.enabled else "disabled"
                    print(f"{reg.name:<12} {status:<9} priority={reg.priority} {', '.join(reg.media_types)}")

            # Let sibling indexing queued by `extract` finish before exiting
            await store.background.join()
        return 0

    try:
        sys.exit(asyncio.run(_main()))
    except FeatureStoreError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nStopped.")
        sys.exit(130)


if __name__ == "__main__":
    main()
