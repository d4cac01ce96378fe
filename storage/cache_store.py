# storage/cache_store.py
"""Content-addressed cache of validated responses with TTL expiry."""

from __future__ import annotations

import hashlib
import json
import re
import time
from collections.abc import Callable, Sequence
from typing import Protocol

import structlog
from config import settings
from core.errors import StorageError

from models import (
    CacheEntry,
    ContextTurn,
    GenerationRequest,
    RequestKind,
    UserRole,
    ValidationResult,
)

logger = structlog.get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    """Lowercase and collapse whitespace so trivially different prompts share a key."""
    return _WHITESPACE_RE.sub(" ", prompt).strip().lower()


def context_hash(context: Sequence[ContextTurn]) -> str:
    payload = json.dumps(
        [[turn.role, turn.content] for turn in context], ensure_ascii=False
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fingerprint(kind: RequestKind, prompt: str, context: Sequence[ContextTurn]) -> str:
    """Stable hash of ``(kind, normalized prompt, context hash)``."""
    payload = json.dumps(
        [kind.value, normalize_prompt(prompt), context_hash(context)],
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def request_fingerprint(request: GenerationRequest) -> str:
    return fingerprint(request.kind, request.prompt, request.context_sequence)


class CacheBackend(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, entry: CacheEntry) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheBackend:
    """Bounded dict backend.

    Every operation completes without awaiting, so each get or upsert is
    atomic with respect to other tasks on the event loop.
    """

    def __init__(self, maxsize: int = settings.CACHE_MAX_ENTRIES) -> None:
        self.maxsize = maxsize
        self._data: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._data)

    async def get(self, key: str) -> CacheEntry | None:
        return self._data.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        if key not in self._data and len(self._data) >= self.maxsize:
            oldest = min(self._data.items(), key=lambda item: item[1].expires_at)[0]
            del self._data[oldest]
        self._data[key] = entry

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class CacheStore:
    """Short-circuits repeated requests with previously validated content.

    Backend failures never block the pipeline: a failed read is a miss and
    a failed write is logged and dropped.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl: float = settings.CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend or InMemoryCacheBackend()
        self.ttl = ttl
        self._clock = clock

    async def lookup(self, key: str, role: UserRole) -> CacheEntry | None:
        try:
            entry = await self.backend.get(key)
        except StorageError as exc:
            logger.warning("Cache read failed; treating as miss.", key=key, error=str(exc))
            return None
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            logger.debug("Cache entry expired.", key=key)
            try:
                await self.backend.delete(key)
            except StorageError as exc:
                logger.warning("Could not evict expired cache entry.", key=key, error=str(exc))
            return None
        if entry.validated_for_role not in (role, UserRole.STUDENT):
            logger.debug(
                "Cache entry validated for a different audience; treating as miss.",
                key=key,
                entry_role=entry.validated_for_role.value,
                role=role.value,
            )
            return None
        return entry

    async def store(
        self,
        key: str,
        content: str,
        validation: ValidationResult,
        role: UserRole,
    ) -> None:
        """Upsert validated content; the last concurrent writer wins."""
        if not validation.is_valid:
            raise ValueError("Only validated content may be cached")
        entry = CacheEntry(
            content=content,
            validation=validation,
            expires_at=self._clock() + self.ttl,
            validated_for_role=role,
        )
        try:
            await self.backend.set(key, entry)
        except StorageError as exc:
            logger.warning("Cache write failed; continuing without cache.", key=key, error=str(exc))
