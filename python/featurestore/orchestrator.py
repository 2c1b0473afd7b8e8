"""
Orchestrator - Main entry point for feature extraction.

Pipeline for one resource:
1. LOAD: fingerprint the resource (checksum + media type)
2. CACHE: return cached features when the checksum is unchanged
3. TRACK: upsert the resource row
4. SELECT: work out which keys the requested mode needs (minus cached ones
   when gap-filling)
5. DISPATCH: run every applicable provider concurrently, bounded by a
   process-wide semaphore
6. PERSIST: store everything produced in one batch
7. CONTENTS: for a directory, extract the files beneath it and store an
   extraction.summary feature
8. RETURN: stored features (plus cached ones when gap-filling)

Extraction of any single resource is single-flight: concurrent requests for
the same identity wait for each other and then hit the cache.
"""

import asyncio
import logging
import time
import weakref
from pathlib import Path
from typing import AsyncIterator, Callable, FrozenSet, List, Optional, Tuple

from .cache import FeatureCache
from .config import get_config, StoreConfig
from .context import ContextLogger, ExtractionContext, context_logger
from .errors import ExtractionFailed, FeatureStoreError, InvalidInput
from .fingerprinter import ResourceFingerprinter, canonical_locator, is_url
from .models import (
    EventType, ExtractionEvent, ExtractOptions, Feature, FeatureFilter,
    FeatureRecord, IndexOptions, LoadedResource, MediaClass, ProviderRegistration,
    ValueKind,
)
from .modes import EXTRACTION_SUMMARY_KEY, classify, expected_keys, is_extraction_key
from .providers.base import CapabilityProvider
from .registry import CapabilityRegistry


logger = logging.getLogger(__name__)

Emit = Optional[Callable[[ExtractionEvent], None]]

# Presence of this key means embeddings were already generated
DOCUMENT_EMBEDDING_KEY = "embedding.document"

# Producer recorded on extraction.summary
DIRECTORY_EXTRACTOR = "directory-extractor"


class ExtractionOrchestrator:
    """
    Coordinates fingerprinting, cache lookups and provider dispatch.

    Two entry points:
    - extract(): public; may also queue background indexing of the
      resource's containing directory
    - extract_resource(): internal; never queues background work (used by
      the indexer so indexing cannot recurse)
    """

    def __init__(
        self,
        cache: FeatureCache,
        registry: CapabilityRegistry,
        fingerprinter: Optional[ResourceFingerprinter] = None,
        config: Optional[StoreConfig] = None,
    ):
        self.config = config or get_config()
        self._cache = cache
        self._registry = registry
        self._fingerprinter = fingerprinter or ResourceFingerprinter(self.config)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.background = None  # BackgroundIndexQueue, attached by FeatureStore
        self.indexer = None  # DirectoryIndexer, attached by FeatureStore

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.provider_concurrency)
        return self._semaphore

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def extract(
        self,
        locator: str,
        options: Optional[ExtractOptions] = None,
        context: Optional[ExtractionContext] = None,
    ) -> List[Feature]:
        """
        Extract features for a file path or URL.

        Raises:
            InvalidInput: bad locator or options
            ExtractionFailed: the resource could not be loaded, or every
                applicable provider failed
            StorageError: the cache could not be read or written
        """
        options = options or ExtractOptions()
        context = context or ExtractionContext(locator=locator)
        try:
            features, _ = await self._run(locator, options, context)
            return features
        finally:
            self._index_siblings(locator, context)

    async def extract_resource(
        self,
        locator: str,
        options: Optional[ExtractOptions] = None,
        context: Optional[ExtractionContext] = None,
    ) -> List[Feature]:
        """Same as extract() without triggering background indexing."""
        features, _ = await self.extract_or_reuse(locator, options, context)
        return features

    async def extract_or_reuse(
        self,
        locator: str,
        options: Optional[ExtractOptions] = None,
        context: Optional[ExtractionContext] = None,
    ) -> Tuple[List[Feature], bool]:
        """
        extract_resource() that also reports whether the result came from
        the cache (unchanged checksum, unexpired features).
        """
        options = options or ExtractOptions()
        context = context or ExtractionContext(locator=locator, origin="index")
        return await self._run(locator, options, context)

    async def extract_stream(
        self,
        locator: str,
        options: Optional[ExtractOptions] = None,
        context: Optional[ExtractionContext] = None,
    ) -> AsyncIterator[ExtractionEvent]:
        """
        Extract features, yielding progress events as they happen.

        Always yields STARTED first and COMPLETED last. Failures arrive as
        PROVIDER_ERROR events and on the COMPLETED event's error field
        rather than as exceptions.
        """
        options = options or ExtractOptions()
        context = context or ExtractionContext(locator=locator)
        queue: asyncio.Queue = asyncio.Queue()

        async def produce():
            try:
                await self._run(locator, options, context, emit=queue.put_nowait)
            except FeatureStoreError as e:
                queue.put_nowait(ExtractionEvent(
                    type=EventType.COMPLETED, resource=locator, error=str(e),
                ))
            except Exception as e:
                # Unblock the consumer, then surface the bug through `await task`
                queue.put_nowait(ExtractionEvent(
                    type=EventType.COMPLETED, resource=locator, error=str(e),
                ))
                raise

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type == EventType.COMPLETED:
                    break
            await task
        finally:
            if not task.done():
                task.cancel()
            self._index_siblings(locator, context)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    async def _run(
        self,
        locator: str,
        options: ExtractOptions,
        context: ExtractionContext,
        emit: Emit = None,
    ) -> Tuple[List[Feature], bool]:
        log = context_logger(logger, context)
        if emit:
            emit(ExtractionEvent(type=EventType.STARTED, resource=locator))
        identity = canonical_locator(locator)

        start_time = time.monotonic()
        async with self._lock_for(identity):
            features, cached = await self._extract_locked(locator, options, context, log, emit)

        log.info(
            f"{'Reused' if cached else 'Extracted'} {len(features)} features for {identity} "
            f"in {time.monotonic() - start_time:.2f}s"
        )
        if emit:
            emit(ExtractionEvent(type=EventType.COMPLETED, resource=locator, features=features))
        return features, cached

    async def _extract_locked(
        self,
        locator: str,
        options: ExtractOptions,
        context: ExtractionContext,
        log: ContextLogger,
        emit: Emit,
    ) -> Tuple[List[Feature], bool]:
        # 1. LOAD
        try:
            resource = await self._fingerprinter.load(locator)
        except InvalidInput:
            raise
        except FeatureStoreError as e:
            log.error(f"Failed to load {locator}: {e}")
            raise ExtractionFailed(
                f"Failed to load {locator}: {e}",
                causes=[e],
                context={"resource": locator},
            ) from e

        media_class = classify(resource.media_type, resource.kind)

        # 2. CACHE
        existing: List[Feature] = []
        if not options.force:
            stored = self._cache.get_resource(resource.url)
            if stored is not None and stored.checksum == resource.checksum:
                # Rows written by other components (indexing summaries) are not a hit
                existing = [
                    f for f in self._cache.query_features(FeatureFilter(resource_id=resource.url))
                    if is_extraction_key(media_class, f.key)
                ]
                if existing and not options.update_missing:
                    self._cache.upsert_resource(resource.to_resource())
                    log.info(f"Cache hit: {len(existing)} features for {resource.url}")
                    return existing, True
            elif stored is not None:
                log.debug(f"Checksum changed for {resource.url}; recomputing")

        # 3. TRACK
        self._cache.upsert_resource(resource.to_resource())

        # 4. SELECT
        wanted = set(expected_keys(media_class, options.mode))
        present = {f.key for f in existing}
        if options.update_missing:
            wanted -= present

        want_embeddings = (
            options.include_embeddings
            and media_class == MediaClass.TEXT
            and not (options.update_missing and DOCUMENT_EMBEDDING_KEY in present)
        )

        if not wanted and not want_embeddings:
            if existing:
                log.info(f"No missing features for {resource.url}")
            else:
                log.warning(f"No features defined for {resource.media_type} ({resource.url})")
            return existing, bool(existing)

        # 5. DISPATCH
        ttl = options.ttl or self.config.default_ttl
        produced = await self._dispatch(
            resource, frozenset(wanted), want_embeddings, ttl, options, log, emit
        )

        # 6. PERSIST
        stored_features = self._cache.store_features(resource.url, produced, default_ttl=ttl)

        # 7. CONTENTS: a directory also gets every file beneath it extracted
        if media_class == MediaClass.DIRECTORY and self.indexer is not None:
            stored_features += await self._extract_contents(resource, options, ttl, context, log)

        # 8. RETURN
        if options.update_missing:
            produced_keys = {f.key for f in stored_features}
            kept = [f for f in existing if f.key not in produced_keys]
            return sorted(kept + stored_features, key=lambda f: f.key), False
        return stored_features, False

    async def _extract_contents(
        self,
        resource: LoadedResource,
        options: ExtractOptions,
        ttl: int,
        context: ExtractionContext,
        log: ContextLogger,
    ) -> List[Feature]:
        """
        Extract the files under a directory and store extraction.summary.

        Files go through extract_resource(), so this never queues background
        indexing.
        """
        result = await self.indexer.index_directory(
            str(resource.path),
            IndexOptions(
                recursive=True,
                mode=options.mode,
                ttl=ttl,
                include_embeddings=options.include_embeddings,
            ),
            context,
        )
        log.info(
            f"Directory extraction of {resource.path}: {len(result.indexed)} extracted, "
            f"{len(result.skipped)} unchanged or skipped, {len(result.errors)} failed"
        )
        return self._cache.store_features(
            resource.url,
            [FeatureRecord(
                key=EXTRACTION_SUMMARY_KEY,
                value={
                    "type": "directory",
                    "path": str(resource.path),
                    "files_processed": len(result.indexed),
                    "extracted": result.indexed,
                    "skipped": result.skipped,
                    "errors": result.errors,
                },
                kind=ValueKind.JSON,
                ttl=ttl,
            )],
            provider=DIRECTORY_EXTRACTOR,
            default_ttl=ttl,
        )

    async def _dispatch(
        self,
        resource: LoadedResource,
        wanted: FrozenSet[str],
        want_embeddings: bool,
        ttl: int,
        options: ExtractOptions,
        log: ContextLogger,
        emit: Emit,
    ) -> List[FeatureRecord]:
        """
        Run applicable providers concurrently.

        Raises:
            ExtractionFailed: every applicable (non-enrichment) provider failed
        """
        primary: List[Tuple[ProviderRegistration, CapabilityProvider, FrozenSet[str]]] = []
        enrichment: List[Tuple[ProviderRegistration, CapabilityProvider]] = []

        for registration, provider in self._registry.resolve(resource.media_type, options.providers):
            if provider.enrichment and not want_embeddings:
                continue
            if not provider.is_available():
                log.warning(f"Provider {registration.name} is unavailable; skipping")
                continue
            if provider.enrichment:
                enrichment.append((registration, provider))
                continue
            keys = frozenset(registration.covered_keys(wanted))
            if keys:
                primary.append((registration, provider, keys))

        if not primary and not enrichment:
            log.warning(f"No provider available for {resource.media_type} ({resource.url})")
            return []

        tasks = [
            self._invoke(registration, provider, resource, keys, ttl, log, emit)
            for registration, provider, keys in primary
        ] + [
            self._invoke(registration, provider, resource, None, ttl, log, emit)
            for registration, provider in enrichment
        ]
        results = await asyncio.gather(*tasks)

        primary_results = results[:len(primary)]
        enrichment_results = results[len(primary):]

        records: List[FeatureRecord] = []
        errors: List[BaseException] = []
        successes = 0
        for produced, error in primary_results:
            if error is None:
                successes += 1
                records.extend(produced)
            else:
                errors.append(error)

        if primary and successes == 0:
            raise ExtractionFailed(
                f"All {len(primary)} providers failed for {resource.url}",
                causes=errors,
                context={"resource": resource.url},
            )

        for (registration, _), (produced, error) in zip(enrichment, enrichment_results):
            if error is None:
                records.extend(produced)
            else:
                log.warning(f"Enrichment provider {registration.name} failed: {error}")

        return records

    async def _invoke(
        self,
        registration: ProviderRegistration,
        provider: CapabilityProvider,
        resource: LoadedResource,
        keys: Optional[FrozenSet[str]],
        ttl: int,
        log: ContextLogger,
        emit: Emit,
    ) -> Tuple[List[FeatureRecord], Optional[BaseException]]:
        """Call one provider; returns (records, None) or ([], error)."""
        name = registration.name
        async with self._get_semaphore():
            if emit:
                emit(ExtractionEvent(type=EventType.PROVIDER_STARTED, resource=resource.url, provider=name))

            start_time = time.monotonic()
            try:
                call = provider.extract(
                    resource.content, resource.media_type, ttl, keys=keys, resource=resource
                )
                if self.config.provider_timeout:
                    records = await asyncio.wait_for(call, self.config.provider_timeout)
                else:
                    records = await call
            except asyncio.TimeoutError:
                error: BaseException = ExtractionFailed(
                    f"Provider {name} timed out after {self.config.provider_timeout}s",
                    provider=name,
                )
            except Exception as e:
                error = e
            else:
                error = None

        if error is not None:
            log.error(f"Provider {name} failed for {resource.url}: {error}")
            if emit:
                emit(ExtractionEvent(
                    type=EventType.PROVIDER_ERROR, resource=resource.url,
                    provider=name, error=str(error),
                ))
            return [], error

        accepted = []
        for record in records or []:
            if keys is not None and record.key not in keys:
                continue
            if keys is None and not registration.produces(record.key):
                continue
            if record.provider is None:
                record.provider = name
            accepted.append(record)

        log.debug(
            f"Provider {name} produced {len(accepted)} features "
            f"in {time.monotonic() - start_time:.2f}s"
        )
        if emit:
            emit(ExtractionEvent(
                type=EventType.PROVIDER_COMPLETED, resource=resource.url, provider=name,
                features=self._cache.make_features(resource.url, accepted, default_ttl=ttl),
            ))
        return accepted, None

    # ------------------------------------------------------------------
    # Background indexing
    # ------------------------------------------------------------------

    def _index_siblings(self, locator: str, context: ExtractionContext) -> None:
        """Queue indexing of a file's directory if it has no fresh features."""
        if not self.config.background_indexing or self.background is None:
            return
        if not isinstance(locator, str) or is_url(locator):
            return
        try:
            path = Path(canonical_locator(locator)[len("file://"):])
        except InvalidInput:
            return
        if not path.is_file():
            return

        directory = path.parent
        directory_url = f"file://{directory}"
        try:
            if self._cache.query_features(FeatureFilter(resource_id=directory_url)):
                return
        except FeatureStoreError as e:
            context_logger(logger, context).warning(f"Could not check {directory_url}: {e}")
            return

        self.background.submit(
            str(directory),
            IndexOptions(max_files=self.config.background_max_files, ttl=self.config.index_ttl),
            context.child(str(directory), origin="background"),
        )
