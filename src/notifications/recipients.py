"""Recipient resolution with caching, fallback broadening and deduplication."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Iterable, Optional

from src.notifications.config import (
    DEFAULT_NOTIFICATION_CONFIG,
    NotificationConfig,
    RecipientType,
    ResolutionSource,
)
from src.notifications.directory import RecipientDirectory
from src.notifications.errors import InvalidRequestError, ResolutionError
from src.notifications.models import Recipient, ResolutionResult
from src.notifications.token_store import BaseTokenStore, call_with_timeout

logger = logging.getLogger(__name__)

CacheKey = tuple[str, Optional[str], RecipientType]
Generation = tuple[int, int]


class RecipientCache:
    """TTL cache of resolution results, bounded in size.

    Entries expire lazily on access. When full, the oldest entry is
    evicted. All access goes through one lock so an explicit clear is
    visible to the very next read.

    Every clear bumps a generation counter, per client or global. A
    resolver reads the generation before its lookup and passes it back to
    ``set``; a result computed before a clear is then dropped instead of
    repopulating the cache with stale recipients.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[CacheKey, tuple[float, ResolutionResult]] = OrderedDict()
        self._generations: dict[str, int] = {}
        self._global_generation = 0
        self.hits = 0
        self.misses = 0

    def generation(self, client_id: str) -> Generation:
        with self._lock:
            return self._global_generation, self._generations.get(client_id, 0)

    def get(self, key: CacheKey) -> Optional[ResolutionResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return result

    def set(
        self,
        key: CacheKey,
        result: ResolutionResult,
        generation: Optional[Generation] = None,
    ) -> bool:
        """Store a result. False when a clear since ``generation`` made it stale."""
        with self._lock:
            current = (self._global_generation, self._generations.get(key[0], 0))
            if generation is not None and generation != current:
                return False
            self._entries.pop(key, None)
            self._entries[key] = (self._clock() + self.ttl_seconds, result)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def clear(self, client_id: Optional[str] = None) -> int:
        """Remove one client's entries, or every entry. Returns the count removed."""
        with self._lock:
            if client_id is None:
                self._global_generation += 1
                removed = len(self._entries)
                self._entries.clear()
                return removed
            self._generations[client_id] = self._generations.get(client_id, 0) + 1
            keys = [k for k in self._entries if k[0] == client_id]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def invalidate_tokens(self, tokens: Iterable[str]) -> int:
        """Drop every entry that would still deliver to one of ``tokens``.

        In-flight resolutions may hold the same tokens, so the global
        generation moves too.
        """
        tokens = set(tokens)
        if not tokens:
            return 0
        with self._lock:
            self._global_generation += 1
            keys = [
                key for key, (_, result) in self._entries.items()
                if any(t in tokens for r in result.recipients for t in r.tokens)
            ]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.info("Dropped %d recipient cache entries holding deactivated tokens", len(keys))
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            size = len(self._entries)
        total = self.hits + self.misses
        return {
            "size": size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total * 100, 2) if total else 0.0,
            "ttl_seconds": self.ttl_seconds,
        }


class RecipientResolver:
    """Turns (client, project, recipient type) into deliverable recipients.

    Lookup order: cache, then the primary scope, then a fallback scope
    widened to every admin and staff member of the client.
    """

    def __init__(
        self,
        directory: RecipientDirectory,
        store: BaseTokenStore,
        config: Optional[NotificationConfig] = None,
        cache: Optional[RecipientCache] = None,
    ) -> None:
        self.directory = directory
        self.store = store
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self.cache = cache or RecipientCache(
            ttl_seconds=self.config.recipient_cache_ttl_seconds,
            max_entries=self.config.recipient_cache_max_entries,
        )

    def resolve(
        self,
        client_id: Optional[str],
        project_id: Optional[str] = None,
        recipient_type: RecipientType = RecipientType.ALL,
        skip_cache: bool = False,
    ) -> ResolutionResult:
        if not client_id:
            raise InvalidRequestError("clientId is required", field="client_id")

        start = time.perf_counter()
        key: CacheKey = (client_id, project_id, recipient_type)
        generation = self.cache.generation(client_id)

        if not skip_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Recipient cache hit for %s", key)
                return cached.with_source(ResolutionSource.CACHE, _elapsed_ms(start))

        errors: list[str] = []
        source = ResolutionSource.PRIMARY
        recipients: list[Recipient] = []
        dedup_count = 0
        completed = True

        try:
            recipients, dedup_count = self._lookup(client_id, project_id, recipient_type)
        except ResolutionError as exc:
            logger.warning("Primary recipient lookup failed for client %s: %s", client_id, exc)
            errors.append(f"Primary resolution failed: {exc.message}")
            completed = False

        if not recipients:
            fallback_key: CacheKey = (client_id, None, RecipientType.ALL)
            if fallback_key == key:
                errors.append(
                    "No recipients in primary scope; fallback scope is identical, skipped"
                )
            else:
                errors.append(
                    f"No recipients for project={project_id} type={recipient_type.value}; "
                    "falling back to all client admins and staff"
                )
                source = ResolutionSource.FALLBACK
                try:
                    recipients, dedup_count = self._lookup(client_id, None, RecipientType.ALL)
                    completed = True
                except ResolutionError as exc:
                    logger.error("Fallback recipient lookup failed for client %s: %s", client_id, exc)
                    errors.append(f"Fallback resolution failed: {exc.message}")
                    completed = False
                if not recipients and completed:
                    errors.append("No recipients found after fallback")

        result = ResolutionResult(
            client_id=client_id,
            project_id=project_id,
            recipient_type=recipient_type,
            recipients=tuple(recipients),
            source=source,
            errors=tuple(errors),
            resolution_time_ms=_elapsed_ms(start),
            deduplication_count=dedup_count,
        )

        if completed and not self.cache.set(key, result, generation):
            logger.debug("Recipient cache cleared during resolution of %s; result not cached", key)

        logger.info(
            "Resolved %d recipients for client %s (source=%s, dedup=%d)",
            result.recipient_count,
            client_id,
            source.value,
            dedup_count,
        )
        return result

    def clear_cache(self, client_id: Optional[str] = None) -> int:
        removed = self.cache.clear(client_id)
        logger.info("Cleared %d recipient cache entries (client=%s)", removed, client_id or "*")
        return removed

    def _lookup(
        self,
        client_id: str,
        project_id: Optional[str],
        recipient_type: RecipientType,
    ) -> tuple[list[Recipient], int]:
        """Directory lookup joined with healthy tokens.

        The token store call is bounded by ``store_timeout_seconds``; a
        timeout surfaces as ResolutionError like any other store failure.
        Returns the deduplicated recipients and how many duplicate
        directory entries were merged.
        """
        try:
            entries = self.directory.lookup(client_id, recipient_type, project_id)
            unique: dict[str, Recipient] = {}
            for entry in entries:
                if entry.user_id not in unique:
                    unique[entry.user_id] = Recipient(
                        user_id=entry.user_id,
                        user_type=entry.user_type,
                        full_name=entry.full_name,
                    )
            dedup_count = len(entries) - len(unique)

            tokens_by_user: dict[str, list[str]] = {}
            healthy = call_with_timeout(
                self.store.find_healthy_for_users,
                self.config.store_timeout_seconds,
                list(unique),
                min_score=self.config.health_score_cutoff,
            )
            for record in healthy:
                user_tokens = tokens_by_user.setdefault(record.user_id, [])
                if record.token not in user_tokens:
                    user_tokens.append(record.token)
        except ResolutionError:
            raise
        except Exception as exc:
            raise ResolutionError(str(exc) or exc.__class__.__name__) from exc

        recipients = [
            Recipient(
                user_id=r.user_id,
                user_type=r.user_type,
                full_name=r.full_name,
                tokens=tuple(tokens_by_user[r.user_id]),
            )
            for r in unique.values()
            if tokens_by_user.get(r.user_id)
        ]
        return recipients, dedup_count


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
