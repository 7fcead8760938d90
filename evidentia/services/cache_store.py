"""
Stage result cache.

Every stage result is one JSON blob `{"text", "structured"}` stored under a
key derived from the paper's storage path. Two backends: a sqlite table
(default) and an S3 bucket. Both are blocking libraries, so every call runs
in a worker thread.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from evidentia.config import Settings, settings
from evidentia.database import get_db
from evidentia.errors import ConfigurationError

logger = logging.getLogger(__name__)


class CacheStore:
    """Interface shared by the cache backends"""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def put(self, key: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> None:
        raise NotImplementedError


def _decode_blob(key: str, raw: Any) -> Optional[Dict[str, Any]]:
    """Parse a stored blob; unreadable blobs count as cache misses."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring unreadable cache blob {key}: {e}")
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
        logger.warning(f"Ignoring cache blob {key} without text")
        return None
    return {"text": payload["text"], "structured": payload.get("structured")}


# ============================================================================
# SQLITE BACKEND
# ============================================================================

class SqliteCacheStore(CacheStore):
    """Blobs in the `stage_cache` table"""

    def __init__(self, database_path: Optional[str] = None):
        self.database_path = database_path

    def _get(self, key: str) -> Optional[Dict[str, Any]]:
        with get_db(self.database_path) as conn:
            row = conn.execute("SELECT payload FROM stage_cache WHERE cache_key = ?", (key,)).fetchone()
        return _decode_blob(key, row["payload"]) if row else None

    def _put(self, key: str, payload: Dict[str, Any]) -> None:
        with get_db(self.database_path) as conn:
            conn.execute(
                """
                INSERT INTO stage_cache (cache_key, payload, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (key, json.dumps(payload), datetime.now(timezone.utc).isoformat()),
            )

    def _exists(self, key: str) -> bool:
        with get_db(self.database_path) as conn:
            row = conn.execute("SELECT 1 FROM stage_cache WHERE cache_key = ?", (key,)).fetchone()
        return row is not None

    def _delete(self, key: str) -> None:
        with get_db(self.database_path) as conn:
            conn.execute("DELETE FROM stage_cache WHERE cache_key = ?", (key,))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._put, key, payload)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)


# ============================================================================
# S3 BACKEND
# ============================================================================

def get_s3_client():
    """
    Create the S3 client used for the blob cache.

    Returns:
        boto3 S3 client
    """
    config = Config(
        signature_version='s3v4',
        s3={'addressing_style': 'path'}
    )
    return boto3.client('s3', config=config)


def _is_missing(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code", "")
    return code in ("NoSuchKey", "404", "NotFound")


class S3CacheStore(CacheStore):
    """Blobs as JSON objects in a bucket"""

    def __init__(self, bucket: str, prefix: str = "", client=None):
        self.bucket = bucket
        self.prefix = prefix
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return _decode_blob(key, response["Body"].read())

    def _put(self, key: str, payload: Dict[str, Any]) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._object_key(key),
            Body=json.dumps(payload).encode("utf-8"),
            ContentType="application/json",
        )

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as e:
            if _is_missing(e):
                return False
            raise
        return True

    def _delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self._object_key(key))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._put, key, payload)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)


CACHE_ERRORS = (OSError, sqlite3.Error, BotoCoreError, ClientError)


def build_cache_store(config: Optional[Settings] = None) -> CacheStore:
    """
    Create the cache backend named by `cache_backend`.

    Raises:
        ConfigurationError: For an unknown backend name
    """
    config = config or settings
    backend = config.cache_backend.lower()
    if backend == "sqlite":
        return SqliteCacheStore(config.database_path)
    if backend == "s3":
        return S3CacheStore(config.cache_bucket, config.cache_prefix)
    raise ConfigurationError(f"Unknown cache backend: {config.cache_backend}")
