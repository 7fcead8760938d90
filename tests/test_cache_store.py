"""Tests for the sqlite and S3 stage result caches."""

import asyncio
import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from evidentia.config import Settings, settings
from evidentia.database import get_db
from evidentia.db_init import init_database
from evidentia.errors import ConfigurationError
from evidentia.services.cache_store import S3CacheStore, SqliteCacheStore, build_cache_store
from evidentia.stages.registry import cache_key, cache_keys


def client_error(code, operation="GetObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

class TestCacheKeys:

    def test_pdf_suffix_replaced(self):
        assert cache_key("papers/abc.pdf", "claims") == "papers/abc-claims.json"
        assert cache_key("papers/abc.PDF", "patents") == "papers/abc-patents.json"

    def test_non_pdf_path_appended(self):
        assert cache_key("papers/abc", "verified-claims") == "papers/abc-verified-claims.json"

    def test_every_stage_has_a_distinct_key(self):
        keys = cache_keys("papers/abc.pdf")
        assert len(keys) == 7
        assert len(set(keys.values())) == 7


# ---------------------------------------------------------------------------
# Sqlite backend
# ---------------------------------------------------------------------------

class TestSqliteCacheStore:

    @pytest.fixture
    def store(self):
        init_database()
        return SqliteCacheStore(settings.database_path)

    def test_put_get_delete(self, store):
        payload = {"text": "brief", "structured": {"claims": [{"id": "C1"}]}}

        async def run():
            await store.put("papers/abc-claims.json", payload)
            loaded = await store.get("papers/abc-claims.json")
            exists = await store.exists("papers/abc-claims.json")
            await store.delete("papers/abc-claims.json")
            return loaded, exists, await store.get("papers/abc-claims.json")

        loaded, exists, after_delete = asyncio.run(run())
        assert loaded == payload
        assert exists is True
        assert after_delete is None

    def test_put_overwrites(self, store):
        async def run():
            await store.put("key", {"text": "one", "structured": None})
            await store.put("key", {"text": "two", "structured": None})
            return await store.get("key")

        assert asyncio.run(run()) == {"text": "two", "structured": None}

    def test_unreadable_blob_is_a_miss(self, store):
        """Corrupt or text-less blobs are treated as absent."""
        with get_db(settings.database_path) as conn:
            conn.execute(
                "INSERT INTO stage_cache (cache_key, payload, updated_at) VALUES (?, ?, ?)",
                ("broken", "{not json", "2024-01-01T00:00:00+00:00"),
            )
            conn.execute(
                "INSERT INTO stage_cache (cache_key, payload, updated_at) VALUES (?, ?, ?)",
                ("textless", json.dumps({"structured": {}}), "2024-01-01T00:00:00+00:00"),
            )

        assert asyncio.run(store.get("broken")) is None
        assert asyncio.run(store.get("textless")) is None


# ---------------------------------------------------------------------------
# S3 backend
# ---------------------------------------------------------------------------

class TestS3CacheStore:

    def test_get_reads_prefixed_object(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b'{"text": "brief", "structured": null}')}
        store = S3CacheStore("bucket", prefix="cache/", client=client)

        assert asyncio.run(store.get("papers/abc-claims.json")) == {"text": "brief", "structured": None}
        client.get_object.assert_called_once_with(Bucket="bucket", Key="cache/papers/abc-claims.json")

    def test_missing_object_is_a_miss(self):
        client = MagicMock()
        client.get_object.side_effect = client_error("NoSuchKey")
        client.head_object.side_effect = client_error("404", "HeadObject")
        store = S3CacheStore("bucket", client=client)

        assert asyncio.run(store.get("key")) is None
        assert asyncio.run(store.exists("key")) is False

    def test_other_errors_propagate(self):
        client = MagicMock()
        client.get_object.side_effect = client_error("AccessDenied")
        store = S3CacheStore("bucket", client=client)

        with pytest.raises(ClientError):
            asyncio.run(store.get("key"))

    def test_put_writes_json(self):
        client = MagicMock()
        store = S3CacheStore("bucket", client=client)
        asyncio.run(store.put("key", {"text": "t", "structured": [1]}))

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Key"] == "key"
        assert kwargs["ContentType"] == "application/json"
        assert json.loads(kwargs["Body"]) == {"text": "t", "structured": [1]}


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

class TestBuildCacheStore:

    def test_sqlite_default(self):
        store = build_cache_store()
        assert isinstance(store, SqliteCacheStore)
        assert store.database_path == settings.database_path

    def test_s3_backend(self):
        config = Settings(cache_backend="S3", cache_bucket="evidentia-cache", cache_prefix="stages/")
        store = build_cache_store(config)
        assert isinstance(store, S3CacheStore)
        assert store.bucket == "evidentia-cache"
        assert store.prefix == "stages/"

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_cache_store(Settings(cache_backend="redis"))
