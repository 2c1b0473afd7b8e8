"""
Cache Tests - Verify SQLite feature storage and TTL expiry.

Tests:
- Upsert semantics for resources and features
- TTL boundary (expired when expires_at <= now)
- Sweep, stats and update_ttl
- Provider registrations
"""

import numpy as np
import pytest

from featurestore.cache import FeatureCache
from featurestore.errors import InvalidInput, NotFound, StorageError
from featurestore.models import (
    FeatureFilter, FeatureRecord, ProviderRegistration, Resource, ResourceKind, ValueKind,
)

from conftest import FakeClock


URL = "file:///tmp/doc.txt"


@pytest.fixture
def cache(test_config, clock):
    cache = FeatureCache(test_config, clock=clock)
    yield cache
    cache.close()


def track(cache: FeatureCache, url: str = URL, checksum: str = "abc"):
    cache.upsert_resource(Resource(url=url, kind=ResourceKind.FILE, checksum=checksum, size=3))


class TestResources:

    def test_upsert_and_get(self, cache):
        track(cache)
        resource = cache.get_resource(URL)

        assert resource.checksum == "abc"
        assert resource.kind == ResourceKind.FILE
        assert resource.created_at is not None

    def test_upsert_overwrites(self, cache):
        track(cache, checksum="one")
        track(cache, checksum="two")

        assert cache.get_resource(URL).checksum == "two"
        assert cache.stats().resource_count == 1

    def test_unknown_resource(self, cache):
        assert cache.get_resource("file:///nope") is None


class TestFeatures:

    def test_store_and_query(self, cache):
        track(cache)
        stored = cache.store_features(URL, [
            FeatureRecord(key="text.word_count", value=2, kind=ValueKind.NUMBER),
            FeatureRecord(key="text.content", value="hello world"),
        ], provider="text-stats", default_ttl=60)

        assert [f.key for f in stored] == ["text.word_count", "text.content"]

        features = cache.query_features(FeatureFilter(resource_id=URL))
        assert [f.key for f in features] == ["text.content", "text.word_count"]
        assert all(f.provider == "text-stats" for f in features)
        assert features[1].decoded() == 2

    def test_same_key_overwrites(self, cache):
        """At most one row per (resource, key)."""
        track(cache)
        cache.store_features(URL, [FeatureRecord(key="k", value="old")], default_ttl=60)
        cache.store_features(URL, [FeatureRecord(key="k", value="new")], default_ttl=60)

        features = cache.query_features(FeatureFilter(resource_id=URL))
        assert len(features) == 1
        assert features[0].value == "new"

    def test_record_ttl_wins(self, cache, clock):
        track(cache)
        stored = cache.store_features(URL, [FeatureRecord(key="k", value="v", ttl=5)], default_ttl=60)

        assert stored[0].ttl == 5
        assert stored[0].expires_at == int(clock.now) + 5

    def test_expiry_boundary(self, cache, clock):
        """A feature is expired exactly when expires_at <= now."""
        track(cache)
        cache.store_features(URL, [FeatureRecord(key="k", value="v")], default_ttl=60)

        clock.advance(59)
        assert len(cache.query_features(FeatureFilter(resource_id=URL))) == 1

        clock.advance(1)
        assert cache.query_features(FeatureFilter(resource_id=URL)) == []
        assert len(cache.query_features(FeatureFilter(resource_id=URL, include_expired=True))) == 1

    def test_sweep_expired(self, cache, clock):
        track(cache)
        cache.store_features(URL, [FeatureRecord(key="short", value="v", ttl=10)])
        cache.store_features(URL, [FeatureRecord(key="long", value="v", ttl=1000)])

        clock.advance(10)
        assert cache.sweep_expired() == 1

        remaining = cache.query_features(FeatureFilter(include_expired=True))
        assert [f.key for f in remaining] == ["long"]

    def test_stats(self, cache, clock):
        track(cache)
        cache.store_features(URL, [
            FeatureRecord(key="a", value="1", ttl=10),
            FeatureRecord(key="b", value="2", ttl=100),
        ])
        clock.advance(20)

        stats = cache.stats()
        assert stats.resource_count == 1
        assert stats.feature_count == 2
        assert stats.expired_count == 1

    def test_filter_by_keys_and_provider(self, cache):
        track(cache)
        cache.store_features(URL, [FeatureRecord(key="a", value="1")], provider="p1")
        cache.store_features(URL, [FeatureRecord(key="b", value="2")], provider="p2")

        assert [f.key for f in cache.query_features(FeatureFilter(keys=["b"]))] == ["b"]
        assert [f.key for f in cache.query_features(FeatureFilter(providers=["p1"]))] == ["a"]

    def test_features_need_tracked_resource(self, cache):
        with pytest.raises(StorageError):
            cache.store_features("file:///untracked", [FeatureRecord(key="k", value="v")])

    def test_value_kinds(self, cache):
        track(cache)
        vector = np.array([0.5, -1.0, 2.0], dtype=np.float32)
        cache.store_features(URL, [
            FeatureRecord(key="bin", value=b"\x89PNG\x00", kind=ValueKind.BINARY),
            FeatureRecord(key="json", value={"width": 4, "height": 3}, kind=ValueKind.JSON),
            FeatureRecord(key="vec", value=vector, kind=ValueKind.EMBEDDING),
        ])

        by_key = {f.key: f.decoded() for f in cache.query_features(FeatureFilter(resource_id=URL))}
        assert by_key["bin"] == b"\x89PNG\x00"
        assert by_key["json"] == {"width": 4, "height": 3}
        assert np.array_equal(by_key["vec"], vector)


class TestUpdateTtl:

    def test_recomputes_expiry_from_now(self, cache, clock):
        track(cache)
        cache.store_features(URL, [FeatureRecord(key="k", value="v")], default_ttl=10)
        clock.advance(5)

        feature = cache.update_ttl(URL, "k", 100)

        assert feature.ttl == 100
        assert feature.expires_at == int(clock.now) + 100

    def test_missing_feature(self, cache):
        track(cache)
        with pytest.raises(NotFound):
            cache.update_ttl(URL, "nope", 100)

    @pytest.mark.parametrize("ttl", [0, -5, 1.5, True])
    def test_invalid_ttl(self, cache, ttl):
        with pytest.raises(InvalidInput):
            cache.update_ttl(URL, "k", ttl)


class TestProviders:

    def test_register_and_filter(self, cache):
        cache.register_provider(ProviderRegistration(
            name="image", media_types=["image/*"], feature_keys=["image.*"], priority=50,
        ))
        cache.register_provider(ProviderRegistration(
            name="text", media_types=["text/*"], feature_keys=["text.*"], priority=10,
        ))

        assert [p.name for p in cache.list_providers()] == ["text", "image"]
        assert [p.name for p in cache.list_providers(media_type="image/png")] == ["image"]
        assert cache.list_providers(media_type="video/mp4") == []

    def test_enable_disable(self, cache):
        cache.register_provider(ProviderRegistration(
            name="text", media_types=["text/*"], feature_keys=["text.*"],
        ))
        cache.set_provider_enabled("text", False)

        assert cache.list_providers(enabled=True) == []
        assert cache.get_provider("text").enabled is False
        assert cache.stats().enabled_provider_count == 0

    def test_enable_unknown_provider(self, cache):
        with pytest.raises(NotFound):
            cache.set_provider_enabled("ghost", True)

    def test_survives_reopen(self, test_config):
        first = FeatureCache(test_config, clock=FakeClock())
        first.register_provider(ProviderRegistration(
            name="text", media_types=["text/*"], feature_keys=["text.*"],
        ))
        first.close()

        second = FeatureCache(test_config, clock=FakeClock())
        try:
            assert second.get_provider("text") is not None
        finally:
            second.close()
