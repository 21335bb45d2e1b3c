from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.core.errors import AuthenticationRequiredError, TokenStoreError
from app.schemas.token import StoreTokenParams
from app.services.token_manager import TaskCache, TokenManager, TokenManagerConfig
from conftest import FakeClock, FakeTokenStore, RecordingSleep, make_token


def _manager(store: FakeTokenStore, clock: FakeClock | None = None, sleep: RecordingSleep | None = None) -> TokenManager:
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    if sleep is not None:
        kwargs["sleep"] = sleep
    return TokenManager(store, TokenManagerConfig(), **kwargs)


@pytest.mark.asyncio
async def test_concurrent_reads_share_one_backend_fetch(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    gate = fake_store.hold("get_token")
    manager = _manager(fake_store)

    callers = [asyncio.ensure_future(manager.get_token("user-a", "realm-1")) for _ in range(10)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert fake_store.calls["get_token"] == 1

    gate.set()
    results = await asyncio.gather(*callers)

    assert fake_store.calls["get_token"] == 1
    assert all(result is results[0] for result in results)
    assert results[0].realm_id == "realm-1"


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_fetch(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    gate = fake_store.hold("get_token")
    manager = _manager(fake_store)

    first = asyncio.ensure_future(manager.get_token("user-a", "realm-1"))
    second = asyncio.ensure_future(manager.get_token("user-a", "realm-1"))
    await asyncio.sleep(0)
    first.cancel()
    gate.set()

    token = await second
    assert token is not None
    assert first.cancelled()
    assert fake_store.calls["get_token"] == 1


@pytest.mark.asyncio
async def test_cache_entry_expires_after_ttl(fake_store: FakeTokenStore, fake_clock: FakeClock) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store, clock=fake_clock)

    await manager.get_token("user-a", "realm-1")
    fake_clock.advance(59)
    await manager.get_token("user-a", "realm-1")
    assert fake_store.calls["get_token"] == 1

    fake_clock.advance(2)
    await manager.get_token("user-a", "realm-1")
    assert fake_store.calls["get_token"] == 2


@pytest.mark.asyncio
async def test_user_wide_and_realm_reads_use_separate_keys(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    fake_store.add(make_token("user-a", "realm-2"))
    manager = _manager(fake_store)

    tokens = await manager.get_token("user-a")
    single = await manager.get_token("user-a", "realm-2")

    assert sorted(token.realm_id for token in tokens) == ["realm-1", "realm-2"]
    assert single.realm_id == "realm-2"
    assert fake_store.calls["get_token"] == 2


@pytest.mark.asyncio
async def test_failed_fetch_is_shared_until_ttl(fake_store: FakeTokenStore, fake_clock: FakeClock) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    fake_store.fail("get_token", TokenStoreError("database unavailable"))
    manager = _manager(fake_store, clock=fake_clock)

    with pytest.raises(TokenStoreError):
        await manager.get_token("user-a", "realm-1")
    with pytest.raises(TokenStoreError):
        await manager.get_token("user-a", "realm-1")
    assert fake_store.calls["get_token"] == 1

    fake_clock.advance(61)
    token = await manager.get_token("user-a", "realm-1")
    assert token is not None
    assert fake_store.calls["get_token"] == 2


@pytest.mark.asyncio
async def test_token_close_to_expiry_is_flagged(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-soon", expires_in=timedelta(hours=6)))
    fake_store.add(make_token("user-a", "realm-later", expires_in=timedelta(hours=48)))
    manager = _manager(fake_store)

    soon = await manager.get_token("user-a", "realm-soon")
    later = await manager.get_token("user-a", "realm-later")

    assert soon.needs_refresh is True
    assert later.needs_refresh is False
    assert soon.access_token == "access-token"


@pytest.mark.asyncio
async def test_expiry_helpers(fake_store: FakeTokenStore) -> None:
    manager = _manager(fake_store)
    expired = make_token(expires_in=timedelta(minutes=-1))
    fresh = make_token(expires_in=timedelta(hours=1))

    assert manager.is_token_expired(expired) is True
    assert manager.is_token_expired(fresh) is False
    assert manager.needs_refresh(fresh) is True
    remaining = manager.get_token_expiration_time(fresh)
    assert timedelta(minutes=59) < remaining <= timedelta(hours=1)


@pytest.mark.asyncio
async def test_store_clears_cache_before_backend_call(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store)
    await manager.get_token("user-a", "realm-1")

    await manager.store_token(
        "user-a",
        StoreTokenParams(realm_id="realm-1", access_token="new-access", refresh_token="new-refresh", expires_in=3600),
    )
    token = await manager.get_token("user-a", "realm-1")

    assert fake_store.calls["get_token"] == 2
    assert token.access_token == "new-access"


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_reads_during_pending_store_go_to_backend(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store)
    await manager.get_token("user-a", "realm-1")
    gate = fake_store.hold("store_token")

    pending = asyncio.ensure_future(
        manager.store_token(
            "user-a",
            StoreTokenParams(realm_id="realm-1", access_token="new-access", refresh_token="new-refresh"),
        )
    )
    await _settle()
    assert fake_store.calls["store_token"] == 1
    assert not pending.done()

    await manager.get_token("user-a", "realm-1")
    assert fake_store.calls["get_token"] == 2

    gate.set()
    assert (await pending).success is True


@pytest.mark.asyncio
async def test_reads_during_pending_refresh_go_to_backend(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store)
    await manager.get_token("user-a", "realm-1")
    gate = fake_store.hold("refresh_token")

    pending = asyncio.ensure_future(manager.refresh_token("user-a", "realm-1", "a2", "r2", 3600))
    await _settle()
    assert fake_store.calls["refresh_token"] == 1
    assert not pending.done()

    await manager.get_token("user-a", "realm-1")
    assert fake_store.calls["get_token"] == 2

    gate.set()
    assert await pending is True


@pytest.mark.asyncio
async def test_company_info_update_drops_cached_reads(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store)
    await manager.get_token("user-a", "realm-1")

    assert await manager.update_company_info("user-a", "realm-1", "Acme Books") is True
    token = await manager.get_token("user-a", "realm-1")

    assert token.company_name == "Acme Books"
    assert fake_store.calls["get_token"] == 2


@pytest.mark.asyncio
async def test_revoke_clears_cache_even_when_backend_fails(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store)
    await manager.get_token("user-a", "realm-1")
    fake_store.fail("revoke_token", TokenStoreError("revoke failed"))

    with pytest.raises(TokenStoreError):
        await manager.revoke_token("user-a", "realm-1")

    await manager.get_token("user-a", "realm-1")
    assert fake_store.calls["get_token"] == 2


@pytest.mark.asyncio
async def test_revoke_returns_count_and_hides_tokens(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    fake_store.add(make_token("user-a", "realm-2"))
    manager = _manager(fake_store)

    assert await manager.revoke_token("user-a") == 2
    assert await manager.get_token("user-a") == []
    assert await manager.get_token("user-a", "realm-1") is None


@pytest.mark.asyncio
async def test_refresh_retries_with_exponential_backoff(
    fake_store: FakeTokenStore, recording_sleep: RecordingSleep
) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    fake_store.fail("refresh_token", TokenStoreError("first"), TokenStoreError("second"))
    manager = _manager(fake_store, sleep=recording_sleep)

    updated = await manager.refresh_token("user-a", "realm-1", "rotated-access", "rotated-refresh", 3600)

    assert updated is True
    assert fake_store.calls["refresh_token"] == 3
    assert recording_sleep.delays == [2, 4]
    token = await manager.get_token("user-a", "realm-1")
    assert token.access_token == "rotated-access"


@pytest.mark.asyncio
async def test_refresh_gives_up_with_last_error(
    fake_store: FakeTokenStore, recording_sleep: RecordingSleep
) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    fake_store.fail(
        "refresh_token",
        TokenStoreError("first"),
        TokenStoreError("second"),
        TokenStoreError("third"),
    )
    manager = _manager(fake_store, sleep=recording_sleep)

    with pytest.raises(TokenStoreError, match="third"):
        await manager.refresh_token("user-a", "realm-1", "a", "r", 3600)

    assert fake_store.calls["refresh_token"] == 3
    assert recording_sleep.delays == [2, 4]


@pytest.mark.asyncio
async def test_refresh_for_other_owner_reports_not_updated(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    manager = _manager(fake_store)

    assert await manager.refresh_token("user-b", "realm-1", "a", "r", 3600) is False
    assert fake_store.calls["refresh_token"] == 1


@pytest.mark.asyncio
async def test_reconnect_by_second_user_transfers_admin(fake_store: FakeTokenStore) -> None:
    manager = _manager(fake_store)
    params = StoreTokenParams(realm_id="realm-1", access_token="a1", refresh_token="r1", expires_in=3600)

    first = await manager.store_token("user-a", params)
    assert first.admin_changed is False
    assert (await manager.get_token("user-a", "realm-1")).user_id == "user-a"

    second = await manager.store_token(
        "user-b",
        params.model_copy(update={"access_token": "a2", "refresh_token": "r2"}),
    )

    assert second.admin_changed is True
    assert second.previous_admin == "user-a"
    assert await manager.get_token("user-a", "realm-1") is None
    token = await manager.get_token("user-b", "realm-1")
    assert token.access_token == "a2"

    changes = await manager.get_admin_changes("user-b", "realm-1")
    assert changes[0].change_type == "transfer"
    assert changes[0].previous_admin_id == "user-a"


@pytest.mark.asyncio
async def test_operations_require_a_signed_in_user(fake_store: FakeTokenStore) -> None:
    manager = _manager(fake_store)

    with pytest.raises(AuthenticationRequiredError, match="Authentication required"):
        await manager.get_token("", "realm-1")
    with pytest.raises(AuthenticationRequiredError):
        await manager.revoke_token("")

    assert sum(fake_store.calls.values()) == 0


@pytest.mark.asyncio
async def test_sync_user_is_deduplicated(fake_store: FakeTokenStore) -> None:
    manager = _manager(fake_store)

    results = await asyncio.gather(*(manager.sync_user("user-a", "a@example.com") for _ in range(5)))

    assert results == [True] * 5
    assert fake_store.calls["sync_user"] == 1
    assert fake_store.users == {"user-a": "a@example.com"}


@pytest.mark.asyncio
async def test_invalidate_and_clear_target_single_user(fake_store: FakeTokenStore) -> None:
    fake_store.add(make_token("user-a", "realm-1"))
    fake_store.add(make_token("user-b", "realm-2"))
    manager = _manager(fake_store)
    await manager.get_token("user-a", "realm-1")
    await manager.get_token("user-b", "realm-2")

    manager.invalidate("user-a", "realm-1")
    await manager.get_token("user-a", "realm-1")
    await manager.get_token("user-b", "realm-2")
    assert fake_store.calls["get_token"] == 3

    manager.clear("user-b")
    await manager.get_token("user-a", "realm-1")
    await manager.get_token("user-b", "realm-2")
    assert fake_store.calls["get_token"] == 4


@pytest.mark.asyncio
async def test_task_cache_membership_follows_ttl(fake_clock: FakeClock) -> None:
    cache: TaskCache[int] = TaskCache(10, fake_clock)

    async def produce() -> int:
        return 7

    task, cached = cache.get_or_create("key", produce)
    assert cached is False
    assert await task == 7
    assert "key" in cache

    _, cached = cache.get_or_create("key", produce)
    assert cached is True

    fake_clock.advance(10)
    assert "key" not in cache
    new_task, cached = cache.get_or_create("key", produce)
    assert cached is False
    assert await new_task == 7
    assert len(cache) == 1
