"""
Indexer - Batch feature extraction over directories.

DirectoryIndexer lists a directory, reuses the cached features of files whose
checksum is unchanged, extracts the rest with bounded concurrency and records a
summary feature on the directory itself.

BackgroundIndexQueue runs indexing passes off the request path. Failures
are logged and kept on its `failures` list instead of being raised to the
request that queued them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set

from .cache import FeatureCache
from .config import get_config, StoreConfig
from .context import ExtractionContext, context_logger
from .errors import FeatureStoreError, InvalidInput, NotFound, StorageError
from .fingerprinter import canonical_locator
from .models import (
    ExtractOptions, FeatureFilter, FeatureRecord, FileInfo, IndexOptions,
    IndexResult, Resource, ResourceKind, ValueKind,
)
from .modes import DIRECTORY_MEDIA_TYPE, INDEX_METADATA_KEY
from .orchestrator import ExtractionOrchestrator
from .scanner import DirectoryScanner


logger = logging.getLogger(__name__)

INDEXER_PROVIDER = "directory-indexer"


class DirectoryState(Enum):
    """Indexing state of a directory."""
    UNINDEXED = "unindexed"
    INDEXING = "indexing"
    FRESH = "fresh"
    STALE = "stale"


class DirectoryIndexer:
    """Indexes the files of a directory through the orchestrator."""

    def __init__(
        self,
        cache: FeatureCache,
        orchestrator: ExtractionOrchestrator,
        config: StoreConfig | None = None,
    ):
        self.config = config or get_config()
        self._cache = cache
        self._orchestrator = orchestrator
        self._scanner = DirectoryScanner(self.config)
        self._in_progress: Set[str] = set()

    async def index_directory(
        self,
        path: str,
        options: Optional[IndexOptions] = None,
        context: Optional[ExtractionContext] = None,
    ) -> IndexResult:
        """
        Index the files of a directory.

        Raises:
            InvalidInput: bad path
            NotFound: path is not a directory
            StorageError: the cache failed (aborts the pass)
        """
        options = options or IndexOptions()
        directory_url = canonical_locator(path)
        if not directory_url.startswith("file://"):
            raise InvalidInput(f"Only local directories can be indexed, got {path!r}")
        directory = Path(directory_url[len("file://"):])
        context = context or ExtractionContext(locator=str(directory), origin="index")
        log = context_logger(logger, context)

        if not directory.is_dir():
            raise NotFound(f"Not a directory: {directory}", context={"path": str(directory)})

        max_files = options.max_files or self.config.index_max_files
        concurrency = options.concurrency or self.config.index_concurrency
        ttl = options.ttl or self.config.index_ttl

        start_time = time.monotonic()
        self._in_progress.add(directory_url)
        try:
            listing = await self._scanner.list_files(
                directory, options.recursive, options.extensions, max_files
            )
            log.info(f"Indexing {len(listing.files)} files in {directory}")

            result = IndexResult(skipped=list(listing.skipped))
            semaphore = asyncio.Semaphore(concurrency)
            extract_options = ExtractOptions(
                mode=options.mode, ttl=ttl, include_embeddings=options.include_embeddings,
            )

            async def index_one(info: FileInfo):
                async with semaphore:
                    file_path = str(info.path)
                    try:
                        _, cached = await self._orchestrator.extract_or_reuse(
                            file_path, extract_options, context.child(file_path, origin="index")
                        )
                    except StorageError:
                        raise
                    except FeatureStoreError as e:
                        log.warning(f"Failed to index {file_path}: {e}")
                        result.errors.append(file_path)
                        return
                    if cached:
                        result.skipped.append(file_path)
                    else:
                        result.indexed.append(file_path)

            tasks = [asyncio.create_task(index_one(info)) for info in listing.files]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                # Stop the files still running before the error propagates
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

            result.duration_seconds = time.monotonic() - start_time
            self._store_summary(directory, directory_url, result, ttl)
        finally:
            self._in_progress.discard(directory_url)

        log.info(f"{directory}: {result}")
        return result

    def _store_summary(self, directory: Path, directory_url: str, result: IndexResult, ttl: int) -> None:
        self._cache.upsert_resource(Resource(
            url=directory_url,
            kind=ResourceKind.DIRECTORY,
            last_processed=self._cache.now(),
            checksum=None,
            size=len(result.indexed) + len(result.skipped),
            media_type=DIRECTORY_MEDIA_TYPE,
        ))
        self._cache.store_features(
            directory_url,
            [FeatureRecord(
                key=INDEX_METADATA_KEY,
                value={
                    "path": str(directory),
                    "indexed_at": self._cache.now(),
                    "indexed": result.indexed,
                    "skipped": result.skipped,
                    "errors": result.errors,
                    "file_count": len(result.indexed),
                    "skipped_count": len(result.skipped),
                    "error_count": len(result.errors),
                    "duration_seconds": round(result.duration_seconds, 3),
                },
                kind=ValueKind.JSON,
                ttl=ttl,
            )],
            provider=INDEXER_PROVIDER,
        )

    def should_index(self, path: str) -> bool:
        """True when the directory has no unexpired features."""
        directory_url = canonical_locator(path)
        return not self._cache.query_features(FeatureFilter(resource_id=directory_url))

    def get_indexed_files(self, path: str) -> List[str]:
        """Files recorded by the latest unexpired indexing pass."""
        directory_url = canonical_locator(path)
        features = self._cache.query_features(
            FeatureFilter(resource_id=directory_url, keys=[INDEX_METADATA_KEY])
        )
        if not features:
            return []
        return list(features[0].decoded().get("indexed", []))

    def directory_state(self, path: str) -> DirectoryState:
        directory_url = canonical_locator(path)
        if directory_url in self._in_progress:
            return DirectoryState.INDEXING
        if self._cache.get_resource(directory_url) is None:
            return DirectoryState.UNINDEXED
        if self.should_index(path):
            return DirectoryState.STALE
        return DirectoryState.FRESH


@dataclass
class IndexFailure:
    """A background indexing pass that raised."""
    directory: str
    error: str
    request_id: str
    timestamp: float = field(default_factory=time.time)


class BackgroundIndexQueue:
    """
    Single-worker queue of directories to index.

    submit() never blocks or raises on behalf of indexing; a directory that
    is already pending is not queued twice.
    """

    def __init__(self, indexer: DirectoryIndexer):
        self._indexer = indexer
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._pending: Set[str] = set()
        self.failures: List[IndexFailure] = []
        self.results: Dict[str, IndexResult] = {}

    def submit(
        self,
        directory: str,
        options: Optional[IndexOptions] = None,
        context: Optional[ExtractionContext] = None,
    ) -> bool:
        """Queue a directory. Returns False when it is already pending."""
        if directory in self._pending:
            return False

        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

        context = context or ExtractionContext(locator=directory, origin="background")
        self._pending.add(directory)
        self._queue.put_nowait((directory, options, context))
        context_logger(logger, context).debug(f"Queued background indexing of {directory}")
        return True

    def pending(self) -> List[str]:
        return sorted(self._pending)

    async def _run(self):
        while True:
            directory, options, context = await self._queue.get()
            log = context_logger(logger, context)
            try:
                result = await self._indexer.index_directory(directory, options, context)
                self.results[directory] = result
                log.info(f"Background indexing of {directory}: {result}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Background indexing of {directory} failed: {e}")
                self.failures.append(IndexFailure(
                    directory=directory, error=str(e), request_id=context.request_id,
                ))
            finally:
                self._pending.discard(directory)
                self._queue.task_done()

    async def join(self):
        """Wait until every queued directory has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self):
        """Stop the worker; queued directories are dropped."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._pending.clear()
