"""
g3geo Hazard Persistence

Keeps the local hazard cache across restarts as a single JSON array of
StoredHazard objects under a fixed key, and the peer's reporting keypair
under a second key so signed hazards keep one attribution identity.

Backends:
    - MemoryHazardStore: process lifetime only (default, tests)
    - RedisHazardStore: Redis string key, via redis.asyncio with pooled,
      retried connections

Failures surface as PersistenceFailure; the coordinator logs them and keeps
serving from memory.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from ..errors import PersistenceFailure
from .codec import KeyPair, b64d
from ..models import StoredHazard


logger = logging.getLogger(__name__)


DEFAULT_STORAGE_KEY = "g3zkp_hazards"
DEFAULT_KEYS_STORAGE_KEY = "g3zkp_traffic_keys"


def dump_hazards(hazards: List[StoredHazard]) -> str:
    return json.dumps([h.to_wire() for h in hazards], separators=(",", ":"))


def parse_hazards(raw: Optional[str]) -> List[StoredHazard]:
    """
    Parse a persisted hazard array.

    Individual malformed entries are skipped; a document that is not a JSON
    array raises PersistenceFailure.
    """
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PersistenceFailure(f"Corrupt hazard cache: {e}") from e
    if not isinstance(items, list):
        raise PersistenceFailure("Corrupt hazard cache: expected a JSON array")

    hazards: List[StoredHazard] = []
    for item in items:
        try:
            hazards.append(StoredHazard.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed persisted hazard: {e.error_count()} error(s)")
    return hazards


def dump_keypair(keypair: KeyPair) -> str:
    return json.dumps(
        {"publicKey": keypair.public_key_b64, "secretKey": keypair.private_key_b64},
        separators=(",", ":"),
    )


def parse_keypair(raw: Optional[str]) -> Optional[KeyPair]:
    """
    Parse a persisted keypair. Returns None when nothing was stored.

    Raises:
        PersistenceFailure: if the document is corrupt or the halves disagree
    """
    if not raw:
        return None
    try:
        doc = json.loads(raw)
        keypair = KeyPair.from_private_bytes(b64d(doc["secretKey"]))
        public_key = doc["publicKey"]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise PersistenceFailure(f"Corrupt keypair: {e}") from e
    if keypair.public_key_b64 != public_key:
        raise PersistenceFailure("Corrupt keypair: public key does not match secret key")
    return keypair


class HazardStore(ABC):
    """Storage backend for the persisted hazard cache."""

    @abstractmethod
    async def load(self) -> List[StoredHazard]:
        """
        Load all persisted hazards (expired ones included).

        Raises:
            PersistenceFailure: if the backend cannot be read
        """
        pass

    @abstractmethod
    async def save(self, hazards: List[StoredHazard]) -> None:
        """
        Replace the persisted array.

        Raises:
            PersistenceFailure: if the backend cannot be written
        """
        pass

    @abstractmethod
    async def load_keypair(self) -> Optional[KeyPair]:
        """Load the reporting keypair, or None if none was saved."""
        pass

    @abstractmethod
    async def save_keypair(self, keypair: KeyPair) -> None:
        pass

    async def close(self) -> None:
        pass


class MemoryHazardStore(HazardStore):
    """Keeps the serialized array in memory."""

    def __init__(self, initial: Optional[str] = None, initial_keys: Optional[str] = None):
        self._raw = initial
        self._keys_raw = initial_keys

    @property
    def raw(self) -> Optional[str]:
        return self._raw

    async def load(self) -> List[StoredHazard]:
        return parse_hazards(self._raw)

    async def save(self, hazards: List[StoredHazard]) -> None:
        self._raw = dump_hazards(hazards)

    async def load_keypair(self) -> Optional[KeyPair]:
        return parse_keypair(self._keys_raw)

    async def save_keypair(self, keypair: KeyPair) -> None:
        self._keys_raw = dump_keypair(keypair)


class RedisConnectionManager:
    """
    Lazily opens one pooled redis.asyncio client for the hazard store.

    The first connect is retried with linear backoff. A pool whose ping
    fails is disconnected before the next attempt.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
    ):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def _open(self) -> redis.Redis:
        pool = redis.ConnectionPool.from_url(
            self._redis_url,
            max_connections=self._max_connections,
            socket_timeout=self._socket_timeout,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            await client.ping()
        except RedisError:
            await client.aclose()
            await pool.disconnect()
            raise
        self._pool = pool
        return client

    async def get_client(self) -> redis.Redis:
        """
        Return the shared client, connecting on first use.

        Raises:
            RedisConnectionError: if every connect attempt failed
        """
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is not None:
                return self._client

            last_error: Optional[RedisError] = None
            for attempt in range(1, self._retry_attempts + 1):
                try:
                    self._client = await self._open()
                except RedisError as e:
                    last_error = e
                    logger.warning(
                        f"Hazard store Redis connect {attempt}/{self._retry_attempts} failed: {e}"
                    )
                    if attempt < self._retry_attempts:
                        await asyncio.sleep(self._retry_delay * attempt)
                    continue
                logger.info("Hazard store connected to Redis")
                return self._client

        raise RedisConnectionError(
            f"Hazard store unreachable after {self._retry_attempts} attempts"
        ) from last_error

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None


class RedisHazardStore(HazardStore):
    """
    Hazard array and reporting keypair stored as two Redis strings.

    A client may be injected directly (tests pass a mock); otherwise one is
    obtained from a RedisConnectionManager built from `redis_url`.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        storage_key: str = DEFAULT_STORAGE_KEY,
        client: Optional[redis.Redis] = None,
        max_connections: int = 20,
        keys_storage_key: str = DEFAULT_KEYS_STORAGE_KEY,
    ):
        self._storage_key = storage_key
        self._keys_storage_key = keys_storage_key
        self._client = client
        self._manager = None if client is not None else RedisConnectionManager(
            redis_url, max_connections=max_connections
        )

    @property
    def storage_key(self) -> str:
        return self._storage_key

    @property
    def keys_storage_key(self) -> str:
        return self._keys_storage_key

    async def _get_client(self) -> redis.Redis:
        if self._client is not None:
            return self._client
        return await self._manager.get_client()

    async def _read(self, key: str, what: str) -> Optional[str]:
        try:
            client = await self._get_client()
            raw = await client.get(key)
        except RedisError as e:
            raise PersistenceFailure(f"Failed to load {what}: {e}") from e
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return raw

    async def _write(self, key: str, value: str, what: str) -> None:
        try:
            client = await self._get_client()
            await client.set(key, value)
        except RedisError as e:
            raise PersistenceFailure(f"Failed to save {what}: {e}") from e

    async def load(self) -> List[StoredHazard]:
        return parse_hazards(await self._read(self._storage_key, "hazards"))

    async def save(self, hazards: List[StoredHazard]) -> None:
        await self._write(self._storage_key, dump_hazards(hazards), "hazards")

    async def load_keypair(self) -> Optional[KeyPair]:
        return parse_keypair(await self._read(self._keys_storage_key, "keypair"))

    async def save_keypair(self, keypair: KeyPair) -> None:
        await self._write(self._keys_storage_key, dump_keypair(keypair), "keypair")

    async def close(self) -> None:
        if self._manager is not None:
            await self._manager.close()
