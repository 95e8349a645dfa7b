"""
Generation locks — at most one report generation per consultation.

try_acquire() is an atomic check-and-set: it returns True for exactly one
caller until release() is called.  Two implementations:

  InMemoryGenerationLock  single process; a guarded set of consultation ids
  GCSGenerationLock       multi-process; a lease blob created with a
                          generation-0 precondition, expiring after a TTL so
                          a crashed holder cannot block a consultation forever.
                          Reclaim and release are conditional on the lease
                          generation, so two holders never overlap
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable

from consultpilot import settings
from consultpilot.infrastructure.gcs import BlobExistsError, GenerationMismatchError

logger = logging.getLogger("pipeline.locks")


class GenerationLock(ABC):
    @abstractmethod
    async def try_acquire(self, consultation_id: str) -> bool:
        """Take the lock; False if another generation already holds it."""

    @abstractmethod
    async def release(self, consultation_id: str) -> None:
        """Release the lock.  Releasing an unheld lock is a no-op."""

    @abstractmethod
    async def is_locked(self, consultation_id: str) -> bool:
        ...


class InMemoryGenerationLock(GenerationLock):
    def __init__(self) -> None:
        self._held: set[str] = set()
        self._guard = threading.Lock()

    async def try_acquire(self, consultation_id: str) -> bool:
        with self._guard:
            if consultation_id in self._held:
                return False
            self._held.add(consultation_id)
            return True

    async def release(self, consultation_id: str) -> None:
        with self._guard:
            self._held.discard(consultation_id)

    async def is_locked(self, consultation_id: str) -> bool:
        with self._guard:
            return consultation_id in self._held

    @property
    def held(self) -> list[str]:
        with self._guard:
            return sorted(self._held)


class GCSGenerationLock(GenerationLock):
    """
    Lease stored at gs://{bucket}/generation_locks/{consultation_id}.json.

    Creation uses if_generation_match=0, so only one process can create
    the blob.  A lease older than its TTL is deleted conditionally on the
    generation that was read, so of several processes reclaiming the same
    stale lease only one gets to delete it; creation is then retried once.

    Each acquisition records the generation it created.  release() deletes
    only that generation, never a lease another holder has since taken.
    """

    LOCK_PREFIX = "generation_locks"

    def __init__(
        self,
        gcs_bucket_manager: Any,
        *,
        lease_seconds: int = settings.LOCK_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gcs = gcs_bucket_manager
        self._lease_seconds = lease_seconds
        self._clock = clock
        self._held: dict[str, Any] = {}  # consultation_id -> lease generation
        self._guard = threading.Lock()

    def _path(self, consultation_id: str) -> str:
        return f"{self.LOCK_PREFIX}/{consultation_id}.json"

    async def try_acquire(self, consultation_id: str) -> bool:
        return await asyncio.to_thread(self._try_acquire_sync, consultation_id)

    def _try_acquire_sync(self, consultation_id: str) -> bool:
        path = self._path(consultation_id)
        holder = uuid.uuid4().hex
        for attempt in range(2):
            now = self._clock()
            lease = json.dumps({
                "consultation_id": consultation_id,
                "holder": holder,
                "acquired_at": now,
                "expires_at": now + self._lease_seconds,
            })
            try:
                generation = self._gcs.create_string(path, lease)
            except BlobExistsError:
                if attempt > 0 or not self._reclaim_if_stale(consultation_id, path, now):
                    return False
                continue
            with self._guard:
                self._held[consultation_id] = generation
            return True
        return False

    def _reclaim_if_stale(self, consultation_id: str, path: str, now: float) -> bool:
        """True if the way is clear for another create attempt."""
        content, generation = self._gcs.read_string_with_generation(path)
        if content is None:
            # Released (or replaced) since our create; the retry decides
            return True
        if not _lease_expired(content, now):
            return False
        logger.warning("Stale generation lease for %s — reclaiming", consultation_id)
        try:
            deleted = self._gcs.delete_file(path, if_generation_match=generation)
        except GenerationMismatchError:
            logger.info("Stale lease for %s already reclaimed elsewhere", consultation_id)
            return False
        return deleted

    async def release(self, consultation_id: str) -> None:
        with self._guard:
            if consultation_id not in self._held:
                return
            generation = self._held.pop(consultation_id)
        await asyncio.to_thread(self._release_sync, consultation_id, generation)

    def _release_sync(self, consultation_id: str, generation: Any) -> None:
        try:
            self._gcs.delete_file(self._path(consultation_id), if_generation_match=generation)
        except GenerationMismatchError:
            logger.warning(
                "Generation lease for %s expired and was taken over; leaving it",
                consultation_id,
            )

    async def is_locked(self, consultation_id: str) -> bool:
        path = self._path(consultation_id)
        content = await asyncio.to_thread(self._gcs.read_string, path)
        if content is None:
            return False
        return not _lease_expired(content, self._clock())


def _lease_expired(content: str, now: float) -> bool:
    try:
        expires_at = float(json.loads(content).get("expires_at", 0))
    except (ValueError, TypeError, AttributeError):
        logger.warning("Unreadable generation lease — treating as expired")
        return True
    return expires_at <= now
