"""
Challenge Ledger

Holds at most one pending challenge per ceremony key. ``consume`` removes the
entry in the same step it reads it, so a challenge can complete at most one
ceremony no matter how many concurrent requests present the same key.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog
from fido2.utils import websafe_decode, websafe_encode
from redis.exceptions import RedisError

from passkey_server.core.config import settings
from passkey_server.core.exceptions import ChallengeNotFound, StoreUnavailable
from passkey_server.core.metrics import challenges_evicted_total, challenges_issued_total
from passkey_server.db.redis import RedisClient

logger = structlog.get_logger()


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class ChallengeEntry:
    key: str
    challenge: bytes
    kind: CeremonyKind
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "challenge": websafe_encode(self.challenge),
            "kind": self.kind.value,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChallengeEntry":
        return cls(
            key=data["key"],
            challenge=websafe_decode(data["challenge"]),
            kind=CeremonyKind(data["kind"]),
            metadata=data.get("metadata") or {},
            created_at=data.get("created_at", 0.0),
            expires_at=data.get("expires_at"),
        )


class ChallengeLedger(ABC):
    """One live challenge per ceremony key, consumed exactly once."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = settings.CHALLENGE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.clock = clock

    def _new_entry(
        self,
        key: str,
        challenge: bytes,
        kind: CeremonyKind,
        metadata: Optional[Dict[str, Any]],
    ) -> ChallengeEntry:
        now = self.clock()
        expires_at = now + self.ttl_seconds if self.ttl_seconds else None
        return ChallengeEntry(
            key=key,
            challenge=challenge,
            kind=kind,
            metadata=dict(metadata or {}),
            created_at=now,
            expires_at=expires_at,
        )

    @abstractmethod
    async def issue(
        self,
        key: str,
        challenge: bytes,
        kind: CeremonyKind,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChallengeEntry:
        """Record ``challenge`` under ``key``, replacing any live entry."""

    @abstractmethod
    async def consume(self, key: str) -> ChallengeEntry:
        """Remove and return the entry for ``key``; raise ChallengeNotFound if absent."""

    @abstractmethod
    async def sweep(self) -> int:
        """Evict expired entries, returning how many were removed."""


class MemoryChallengeLedger(ChallengeLedger):
    """In-process ledger. Suitable for a single server instance."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self._entries: Dict[str, ChallengeEntry] = {}
        # Guards _entries; never held across an await
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def issue(
        self,
        key: str,
        challenge: bytes,
        kind: CeremonyKind,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChallengeEntry:
        entry = self._new_entry(key, challenge, kind, metadata)
        with self._lock:
            replaced = self._entries.get(key) is not None
            self._entries[key] = entry
        challenges_issued_total.labels(kind=kind.value).inc()
        if replaced:
            logger.debug("Pending challenge replaced", kind=kind.value)
        return entry

    async def consume(self, key: str) -> ChallengeEntry:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            raise ChallengeNotFound(key)
        if entry.is_expired(self.clock()):
            challenges_evicted_total.inc()
            logger.info("Expired challenge presented", kind=entry.kind.value)
            raise ChallengeNotFound(key)
        return entry

    async def sweep(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            challenges_evicted_total.inc(len(expired))
            logger.info("Evicted expired challenges", count=len(expired))
        return len(expired)


class RedisChallengeLedger(ChallengeLedger):
    """Ledger shared by several server instances through Redis."""

    KEY_PREFIX = "passkey:challenge:"

    def __init__(
        self,
        client: RedisClient,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self.client = client

    def _redis_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def issue(
        self,
        key: str,
        challenge: bytes,
        kind: CeremonyKind,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChallengeEntry:
        entry = self._new_entry(key, challenge, kind, metadata)
        try:
            await self.client.cache_set(self._redis_key(key), entry.to_dict(), ttl=self.ttl_seconds or None)
        except RedisError as e:
            logger.error("Challenge ledger write failed", error=str(e))
            raise StoreUnavailable("challenge ledger unavailable") from e
        challenges_issued_total.labels(kind=kind.value).inc()
        return entry

    async def consume(self, key: str) -> ChallengeEntry:
        try:
            data = await self.client.cache_pop(self._redis_key(key))
        except RedisError as e:
            logger.error("Challenge ledger read failed", error=str(e))
            raise StoreUnavailable("challenge ledger unavailable") from e
        if data is None:
            raise ChallengeNotFound(key)
        entry = ChallengeEntry.from_dict(data)
        if entry.is_expired(self.clock()):
            raise ChallengeNotFound(key)
        return entry

    async def sweep(self) -> int:
        # Redis expires keys natively
        return 0
