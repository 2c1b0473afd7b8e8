"""
Test Configuration - Shared fixtures for feature store tests.

Uses pytest fixtures to create isolated test environments.
"""

import asyncio
import dataclasses
import shutil
import tempfile
from pathlib import Path
from typing import FrozenSet, Generator, List, Optional

import pytest
import pytest_asyncio

from featurestore.config import StoreConfig, set_config
from featurestore.models import FeatureRecord, LoadedResource
from featurestore.providers.base import CapabilityProvider
from featurestore.store import FeatureStore


TEXT_KEYS = [
    "text.content", "text.word_count", "text.line_count", "text.char_count", "text.keywords",
]


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class CountingProvider(CapabilityProvider):
    """Provider that records its calls and returns '<key>-value' for each key."""

    def __init__(
        self,
        name: str = "fake-text",
        media_types: Optional[List[str]] = None,
        keys: Optional[List[str]] = None,
        fail: bool = False,
        delay: float = 0.0,
        extra_keys: Optional[List[str]] = None,
    ):
        self._name = name
        self._media_types = media_types or ["text/*"]
        self._keys = keys or list(TEXT_KEYS)
        self.fail = fail
        self.delay = delay
        self.extra_keys = extra_keys or []
        self.calls = 0
        self.requested: List[Optional[FrozenSet[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def media_types(self) -> List[str]:
        return self._media_types

    @property
    def feature_keys(self) -> List[str]:
        return self._keys

    async def extract(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]] = None,
        resource: Optional[LoadedResource] = None,
    ) -> List[FeatureRecord]:
        self.calls += 1
        self.requested.append(keys)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError(f"{self._name} exploded")
            wanted = sorted(keys) if keys is not None else list(self._keys)
            return [
                FeatureRecord(key=key, value=f"{key}-value")
                for key in wanted + self.extra_keys
            ]
        finally:
            self.in_flight -= 1


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="featurestore_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def docs_dir(temp_dir: Path) -> Path:
    """Directory holding test documents (kept apart from the database)."""
    docs = temp_dir / "docs"
    docs.mkdir()
    return docs


@pytest.fixture
def test_config(temp_dir: Path) -> StoreConfig:
    """Create an isolated test configuration."""
    config = StoreConfig(
        # Hidden directory, so directory listings never see the database
        db_path=temp_dir / ".featurestore" / "features.db",
        provider_concurrency=5,
        index_concurrency=3,
        executor_workers=2,
    )
    set_config(config)
    return config


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_files(docs_dir: Path) -> dict[str, Path]:
    """Create sample files for testing."""
    files = {}

    doc = docs_dir / "doc.txt"
    doc.write_text("hello world")
    files["doc"] = doc

    md = docs_dir / "readme.md"
    md.write_text("# Test Readme\n\nThis is a markdown file for testing.\n\n## Section 1\n\nSome content here.")
    files["md"] = md

    py = docs_dir / "script.py"
    py.write_text('"""A sample Python script."""\n\ndef hello():\n    print("Hello, world!")\n')
    files["py"] = py

    nested_dir = docs_dir / "subdir" / "nested"
    nested_dir.mkdir(parents=True)
    nested = nested_dir / "deep.txt"
    nested.write_text("A deeply nested file.")
    files["nested"] = nested

    hidden = docs_dir / ".hidden"
    hidden.write_text("This should be skipped.")
    files["hidden"] = hidden

    node_modules = docs_dir / "node_modules"
    node_modules.mkdir()
    (node_modules / "package.json").write_text('{"name": "test"}')
    files["node_modules"] = node_modules / "package.json"

    return files


@pytest.fixture
def fake_provider() -> CountingProvider:
    return CountingProvider()


@pytest_asyncio.fixture
async def store(test_config: StoreConfig) -> FeatureStore:
    """FeatureStore with the built-in providers."""
    store = FeatureStore(test_config)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def fake_store(test_config: StoreConfig, fake_provider: CountingProvider, clock: FakeClock) -> FeatureStore:
    """FeatureStore with one counting text provider and a fake clock."""
    config = dataclasses.replace(test_config, background_indexing=False)
    store = FeatureStore(config, providers=[fake_provider], clock=clock)
    yield store
    await store.close()
