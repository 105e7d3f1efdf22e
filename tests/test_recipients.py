"""Tests for recipient resolution."""

import threading
import time

import pytest

from src.notifications.config import NotificationConfig, RecipientType, ResolutionSource, UserType
from src.notifications.directory import InMemoryRecipientDirectory
from src.notifications.errors import InvalidRequestError
from src.notifications.recipients import RecipientCache, RecipientResolver
from src.notifications.token_store import InMemoryTokenStore

from conftest import CLIENT_ID, PROJECT_ID, expo_token, make_token


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class BrokenDirectory(InMemoryRecipientDirectory):
    """Directory whose project-scoped lookups fail."""

    def staff_for_client(self, client_id, project_id=None):
        if project_id is not None:
            raise ConnectionError("directory unavailable")
        return super().staff_for_client(client_id, project_id)


class GatedDirectory(InMemoryRecipientDirectory):
    """Directory whose next staff lookup blocks, after reading, until released."""

    def __init__(self):
        super().__init__()
        self.gated = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def staff_for_client(self, client_id, project_id=None):
        staff = super().staff_for_client(client_id, project_id)
        if self.gated:
            self.gated = False
            self.entered.set()
            self.release.wait(timeout=5)
        return staff


class SlowStore(InMemoryTokenStore):
    """Store whose first healthy-token query outlasts the store timeout."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.calls = 0

    def find_healthy_for_users(self, user_ids, min_score=50):
        self.calls += 1
        if self.calls == 1:
            time.sleep(self.delay)
        return super().find_healthy_for_users(user_ids, min_score)


class TestRecipientCache:

    def test_expires_after_ttl(self, store, site):
        clock = FakeClock()
        cache = RecipientCache(ttl_seconds=300, clock=clock)
        resolver = RecipientResolver(site, store, cache=cache)

        resolver.resolve(CLIENT_ID, PROJECT_ID)
        clock.now += 299
        assert resolver.resolve(CLIENT_ID, PROJECT_ID).source == ResolutionSource.CACHE
        clock.now += 2
        assert resolver.resolve(CLIENT_ID, PROJECT_ID).source == ResolutionSource.PRIMARY

    def test_evicts_oldest_when_full(self, store, site):
        resolver = RecipientResolver(site, store, cache=RecipientCache(max_entries=2))
        resolver.resolve(CLIENT_ID, "p-a")
        resolver.resolve(CLIENT_ID, "p-b")
        resolver.resolve(CLIENT_ID, "p-c")
        assert len(resolver.cache) == 2

    def test_clear_by_client(self, store, site):
        resolver = RecipientResolver(site, store)
        resolver.resolve(CLIENT_ID, PROJECT_ID)
        resolver.resolve("client-2", None)
        assert resolver.clear_cache(CLIENT_ID) == 1
        assert len(resolver.cache) == 1


class TestRecipientResolver:

    def test_requires_client(self, store, site):
        resolver = RecipientResolver(site, store)
        with pytest.raises(InvalidRequestError):
            resolver.resolve(None)
        with pytest.raises(InvalidRequestError):
            resolver.resolve("")

    def test_primary_then_cache_then_primary_after_clear(self, store, site):
        resolver = RecipientResolver(site, store)

        first = resolver.resolve(CLIENT_ID, PROJECT_ID)
        assert first.source == ResolutionSource.PRIMARY
        second = resolver.resolve(CLIENT_ID, PROJECT_ID)
        assert second.source == ResolutionSource.CACHE
        assert second.user_ids() == first.user_ids()

        resolver.clear_cache(CLIENT_ID)
        assert resolver.resolve(CLIENT_ID, PROJECT_ID).source == ResolutionSource.PRIMARY

    def test_skip_cache(self, store, site):
        resolver = RecipientResolver(site, store)
        resolver.resolve(CLIENT_ID, PROJECT_ID)
        result = resolver.resolve(CLIENT_ID, PROJECT_ID, skip_cache=True)
        assert result.source == ResolutionSource.PRIMARY

    def test_all_includes_admins_and_project_staff(self, store, site):
        result = RecipientResolver(site, store).resolve(CLIENT_ID, PROJECT_ID)
        assert result.user_ids() == ["admin-1", "staff-1", "staff-2", "staff-3"]
        assert result.recipient_count == 4
        assert result.recipients[0].user_type == UserType.ADMIN
        assert result.recipients[0].full_name == "Ada Admin"

    def test_admins_only(self, store, site):
        result = RecipientResolver(site, store).resolve(CLIENT_ID, PROJECT_ID, RecipientType.ADMINS)
        assert result.user_ids() == ["admin-1"]

    def test_deduplicates_users(self, store, site):
        # staff-1 listed twice for the project, admin-1 also listed as staff
        site.add_staff(CLIENT_ID, "staff-1", project_ids=[PROJECT_ID])
        site.add_staff(CLIENT_ID, "admin-1", project_ids=[PROJECT_ID])

        result = RecipientResolver(site, store).resolve(CLIENT_ID, PROJECT_ID)
        assert result.deduplication_count == 2
        assert len(result.user_ids()) == len(set(result.user_ids()))

    def test_users_without_healthy_tokens_excluded(self, store, site):
        store.update_health(expo_token("staff2token"), 30, False)
        site.add_staff(CLIENT_ID, "no-token", project_ids=[PROJECT_ID])

        result = RecipientResolver(site, store).resolve(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)
        assert result.user_ids() == ["staff-1", "staff-3"]

    def test_multiple_tokens_per_user(self, store, site):
        store.register(make_token("staff-1", expo_token("staff1tablet")))
        result = RecipientResolver(site, store).resolve(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)
        assert len(result.recipients[0].tokens) == 2

    def test_fallback_when_primary_empty(self, store, site):
        result = RecipientResolver(site, store).resolve(CLIENT_ID, "empty-project", RecipientType.STAFF)
        assert result.source == ResolutionSource.FALLBACK
        assert set(result.user_ids()) == {"admin-1", "staff-1", "staff-2", "staff-3"}
        assert any("falling back" in e for e in result.errors)

    def test_fallback_skipped_when_scope_identical(self, store, directory):
        result = RecipientResolver(directory, store).resolve(CLIENT_ID)
        assert result.source == ResolutionSource.PRIMARY
        assert result.recipient_count == 0
        assert any("identical" in e for e in result.errors)

    def test_fallback_after_primary_error(self, store):
        directory = BrokenDirectory()
        directory.add_staff(CLIENT_ID, "staff-1", project_ids=[PROJECT_ID])
        store.register(make_token("staff-1", expo_token("staff1token")))

        result = RecipientResolver(directory, store).resolve(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)
        assert result.source == ResolutionSource.FALLBACK
        assert result.user_ids() == ["staff-1"]
        assert any("Primary resolution failed" in e for e in result.errors)

    def test_empty_after_fallback(self, store, directory):
        directory.add_staff(CLIENT_ID, "lonely", project_ids=[PROJECT_ID])
        result = RecipientResolver(directory, store).resolve(CLIENT_ID, PROJECT_ID)
        assert result.recipient_count == 0
        assert "No recipients found after fallback" in result.errors

    def test_failed_lookup_not_cached(self, store):
        class DownDirectory(InMemoryRecipientDirectory):
            def admins_for_client(self, client_id):
                raise ConnectionError("directory unavailable")

        resolver = RecipientResolver(DownDirectory(), store)
        first = resolver.resolve(CLIENT_ID)
        assert any("Primary resolution failed" in e for e in first.errors)
        assert len(resolver.cache) == 0
        assert resolver.resolve(CLIENT_ID).source == ResolutionSource.PRIMARY

    def test_slow_store_times_out_to_fallback(self, directory):
        store = SlowStore(delay=0.5)
        directory.add_staff(CLIENT_ID, "staff-1", project_ids=[PROJECT_ID])
        store.register(make_token("staff-1", expo_token("staff1token")))
        resolver = RecipientResolver(
            directory, store, config=NotificationConfig(store_timeout_seconds=0.05)
        )

        result = resolver.resolve(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)

        assert result.source == ResolutionSource.FALLBACK
        assert result.user_ids() == ["staff-1"]
        assert any(
            e.startswith("Primary resolution failed") and "timed out" in e for e in result.errors
        )


class TestCacheInvalidation:

    def test_clear_during_lookup_discards_stale_result(self, store):
        directory = GatedDirectory()
        for user_id in ("staff-1", "staff-2"):
            directory.add_staff(CLIENT_ID, user_id, project_ids=[PROJECT_ID])
            store.register(make_token(user_id, expo_token(f"{user_id}token")))
        resolver = RecipientResolver(directory, store)

        directory.gated = True
        worker = threading.Thread(
            target=resolver.resolve, args=(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)
        )
        worker.start()
        assert directory.entered.wait(timeout=5)
        assert directory.remove_user(CLIENT_ID, "staff-1") == 1
        resolver.clear_cache(CLIENT_ID)
        directory.release.set()
        worker.join(timeout=5)

        assert len(resolver.cache) == 0
        result = resolver.resolve(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)
        assert result.source == ResolutionSource.PRIMARY
        assert result.user_ids() == ["staff-2"]

    def test_clear_of_other_client_keeps_result(self, store, site):
        cache = RecipientCache()
        resolver = RecipientResolver(site, store, cache=cache)
        generation = cache.generation(CLIENT_ID)
        cache.clear("client-2")
        result = resolver.resolve(CLIENT_ID, PROJECT_ID, skip_cache=True)
        assert cache.set((CLIENT_ID, PROJECT_ID, RecipientType.ALL), result, generation)

    def test_global_clear_rejects_pending_result(self, store, site):
        cache = RecipientCache()
        result = RecipientResolver(site, store, cache=cache).resolve(CLIENT_ID, PROJECT_ID)
        generation = cache.generation(CLIENT_ID)
        cache.clear()
        assert not cache.set((CLIENT_ID, PROJECT_ID, RecipientType.ALL), result, generation)
        assert len(cache) == 0

    def test_invalidate_tokens_drops_entries_holding_them(self, store, site):
        resolver = RecipientResolver(site, store)
        resolver.resolve(CLIENT_ID, PROJECT_ID, RecipientType.STAFF)
        resolver.resolve(CLIENT_ID, PROJECT_ID, RecipientType.ADMINS)

        assert resolver.cache.invalidate_tokens([expo_token("staff1token")]) == 1
        assert len(resolver.cache) == 1
        assert resolver.resolve(CLIENT_ID, PROJECT_ID, RecipientType.ADMINS).source == ResolutionSource.CACHE
