"""
Indexer Tests - Verify directory indexing and the background queue.

Tests:
- Indexing, reusing unchanged files and re-indexing modified ones
- max_files cap and recursion
- Summary feature on the directory
- Background queue de-duplication and failure channel
"""

import asyncio
import dataclasses
import os
import time

import pytest

from featurestore.errors import InvalidInput, NotFound, StorageError
from featurestore.indexer import DirectoryState, INDEX_METADATA_KEY, INDEXER_PROVIDER
from featurestore.models import IndexOptions
from featurestore.store import FeatureStore

from conftest import CountingProvider


class TestDirectoryIndexer:
    """Tests for DirectoryIndexer through the FeatureStore facade."""

    @pytest.mark.asyncio
    async def test_indexes_files(self, store, sample_files, docs_dir):
        result = await store.index_directory(str(docs_dir))

        assert sorted(result.indexed) == sorted([
            str(sample_files["doc"]), str(sample_files["md"]), str(sample_files["py"]),
        ])
        assert result.errors == []
        assert store.query(str(sample_files["md"]))

    @pytest.mark.asyncio
    async def test_max_files_cap(self, store, docs_dir):
        for name in ("a.txt", "b.txt", "c.txt"):
            (docs_dir / name).write_text(f"contents of {name}")

        result = await store.index_directory(str(docs_dir), max_files=2)

        assert len(result.indexed) == 2
        assert str(docs_dir / "c.txt") not in result.indexed + result.skipped + result.errors
        assert store.query(str(docs_dir / "c.txt")) == []

    @pytest.mark.asyncio
    async def test_recursive(self, store, sample_files, docs_dir):
        flat = await store.index_directory(str(docs_dir))
        assert str(sample_files["nested"]) not in flat.indexed

        deep = await store.index_directory(str(docs_dir), recursive=True)
        assert str(sample_files["nested"]) in deep.indexed

    @pytest.mark.asyncio
    async def test_second_pass_skips_fresh_files(self, store, sample_files, docs_dir):
        first = await store.index_directory(str(docs_dir))
        second = await store.index_directory(str(docs_dir))

        assert second.indexed == []
        assert sorted(second.skipped) == sorted(first.indexed)

    @pytest.mark.asyncio
    async def test_modified_file_reindexed(self, store, docs_dir):
        doc = docs_dir / "doc.txt"
        doc.write_text("first version")
        await store.index_directory(str(docs_dir))

        doc.write_text("second version, longer")
        future = time.time() + 10
        os.utime(doc, (future, future))

        result = await store.index_directory(str(docs_dir))

        assert result.indexed == [str(doc)]
        char_count = store.query(str(doc), keys=["text.char_count"])[0]
        assert char_count.decoded() == len("second version, longer")

    @pytest.mark.asyncio
    async def test_content_change_with_same_mtime_reindexed(self, store, docs_dir):
        doc = docs_dir / "doc.txt"
        earlier = time.time() - 100
        doc.write_text("first version")
        os.utime(doc, (earlier, earlier))
        await store.index_directory(str(docs_dir))

        doc.write_text("second version, longer")
        os.utime(doc, (earlier, earlier))

        result = await store.index_directory(str(docs_dir))

        assert result.indexed == [str(doc)]
        char_count = store.query(str(doc), keys=["text.char_count"])[0]
        assert char_count.decoded() == 22

    @pytest.mark.asyncio
    async def test_mode_passed_to_extraction(self, store, docs_dir):
        doc = docs_dir / "doc.txt"
        doc.write_text("hello world")

        await store.index_directory(str(docs_dir), mode="maximal")

        assert store.query(str(doc), keys=["text.keywords"])

    @pytest.mark.asyncio
    async def test_extension_filter(self, store, sample_files, docs_dir):
        result = await store.index_directory(str(docs_dir), extensions=["md"])

        assert result.indexed == [str(sample_files["md"])]

    @pytest.mark.asyncio
    async def test_provider_errors_collected(self, test_config, docs_dir):
        config = dataclasses.replace(test_config, background_indexing=False)
        (docs_dir / "doc.txt").write_text("hello world")

        async with FeatureStore(config, providers=[CountingProvider(fail=True)]) as store:
            result = await store.index_directory(str(docs_dir))

        assert result.indexed == []
        assert result.errors == [str(docs_dir / "doc.txt")]

    @pytest.mark.asyncio
    async def test_summary_feature(self, store, sample_files, docs_dir):
        result = await store.index_directory(str(docs_dir))

        summary = store.query(str(docs_dir), keys=[INDEX_METADATA_KEY])
        assert len(summary) == 1
        assert summary[0].provider == INDEXER_PROVIDER
        assert summary[0].ttl == store.config.index_ttl
        assert summary[0].decoded()["file_count"] == len(result.indexed)

        assert sorted(store.get_indexed_files(str(docs_dir))) == sorted(result.indexed)
        assert store.should_index(str(docs_dir)) is False

    @pytest.mark.asyncio
    async def test_directory_state(self, store, sample_files, docs_dir):
        indexer = store.indexer
        assert indexer.directory_state(str(docs_dir)) == DirectoryState.UNINDEXED

        await store.index_directory(str(docs_dir))
        assert indexer.directory_state(str(docs_dir)) == DirectoryState.FRESH

    @pytest.mark.asyncio
    async def test_not_a_directory(self, store, sample_files):
        with pytest.raises(NotFound):
            await store.index_directory(str(sample_files["doc"]))

    @pytest.mark.asyncio
    async def test_urls_rejected(self, store):
        with pytest.raises(InvalidInput):
            await store.index_directory("https://example.com/files/")

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self, test_config, docs_dir):
        provider = CountingProvider(delay=0.05)
        config = dataclasses.replace(test_config, background_indexing=False)
        for i in range(6):
            (docs_dir / f"doc{i}.txt").write_text(f"document {i}")

        async with FeatureStore(config, providers=[provider]) as store:
            result = await store.index_directory(str(docs_dir), concurrency=2)

        assert len(result.indexed) == 6
        assert provider.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_storage_error_cancels_remaining_files(self, test_config, docs_dir, monkeypatch):
        config = dataclasses.replace(test_config, background_indexing=False)
        for i in range(6):
            (docs_dir / f"doc{i}.txt").write_text(f"document {i}")

        async with FeatureStore(config, providers=[CountingProvider(delay=0.05)]) as store:
            writes = []

            def failing_store_features(*args, **kwargs):
                writes.append(args[0])
                raise StorageError("disk full")

            monkeypatch.setattr(store.cache, "store_features", failing_store_features)

            with pytest.raises(StorageError):
                await store.index_directory(str(docs_dir), concurrency=3)
            await asyncio.sleep(0.3)

        assert 1 <= len(writes) <= 3


class TestBackgroundIndexQueue:

    @pytest.mark.asyncio
    async def test_submit_and_join(self, store, sample_files, docs_dir):
        assert store.background.submit(str(docs_dir), IndexOptions(max_files=10))
        await store.background.join()

        assert str(docs_dir) in store.background.results
        assert store.get_indexed_files(str(docs_dir))

    @pytest.mark.asyncio
    async def test_duplicate_submission_ignored(self, store, sample_files, docs_dir):
        assert store.background.submit(str(docs_dir)) is True
        assert store.background.submit(str(docs_dir)) is False
        assert store.background.pending() == [str(docs_dir)]

        await store.background.join()
        assert store.background.pending() == []

    @pytest.mark.asyncio
    async def test_failures_recorded(self, store, temp_dir):
        missing = temp_dir / "does-not-exist"

        store.background.submit(str(missing))
        await store.background.join()

        assert len(store.background.failures) == 1
        failure = store.background.failures[0]
        assert failure.directory == str(missing)
        assert "Not a directory" in failure.error

    @pytest.mark.asyncio
    async def test_close_stops_worker(self, test_config, docs_dir):
        config = dataclasses.replace(test_config, background_indexing=False)
        store = FeatureStore(config, providers=[CountingProvider(delay=1.0)])
        (docs_dir / "doc.txt").write_text("hello world")

        store.background.submit(str(docs_dir))
        await asyncio.sleep(0.01)
        await store.close()

        assert store.background.pending() == []
