from __future__ import annotations

from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from app.core.config import Settings
from app.core.errors import TokenStoreError
from app.db.models import QBOTokens, Users
from app.db.repo import SqlTokenStore
from app.schemas.token import Token


@pytest.fixture
def store(session_factory, settings: Settings) -> SqlTokenStore:
    return SqlTokenStore(session_factory, settings.fernet_key)


@pytest.mark.asyncio
async def test_store_and_read_back_decrypted_token(store: SqlTokenStore) -> None:
    result = await store.store_token("user-a", "realm-1", "access-1", "refresh-1", 3600, company_name="Acme")

    assert result.success is True
    assert result.admin_changed is False
    token = await store.get_token("user-a", "realm-1")
    assert isinstance(token, Token)
    assert token.access_token == "access-1"
    assert token.refresh_token == "refresh-1"
    assert token.company_name == "Acme"
    assert token.expires_at.tzinfo is not None
    assert token.expires_at > datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_secrets_are_encrypted_at_rest(store: SqlTokenStore, session_factory) -> None:
    await store.store_token("user-a", "realm-1", "plain-access", "plain-refresh", 3600)

    async with session_factory() as session:
        row = (await session.execute(select(QBOTokens))).scalar_one()

    assert row.access_token_enc != "plain-access"
    assert "plain-refresh" not in row.refresh_token_enc


@pytest.mark.asyncio
async def test_second_user_takes_over_realm(store: SqlTokenStore) -> None:
    await store.store_token("user-a", "realm-1", "a1", "r1", 3600)
    result = await store.store_token("user-b", "realm-1", "a2", "r2", 3600)

    assert result.admin_changed is True
    assert result.previous_admin == "user-a"
    assert await store.get_token("user-a", "realm-1") is None
    assert await store.get_token("user-a") == []
    token = await store.get_token("user-b", "realm-1")
    assert token.access_token == "a2"

    changes = await store.get_admin_changes("user-a", "realm-1")
    assert [change.change_type for change in changes] == ["transfer", "initial"]
    assert changes[0].new_admin_id == "user-b"


@pytest.mark.asyncio
async def test_same_user_reconnect_is_not_a_transfer(store: SqlTokenStore) -> None:
    await store.store_token("user-a", "realm-1", "a1", "r1", 3600)
    result = await store.store_token("user-a", "realm-1", "a2", "r2", 3600)

    assert result.admin_changed is False
    assert result.previous_admin is None
    changes = await store.get_admin_changes("user-a", "realm-1")
    assert [change.change_type for change in changes] == ["initial"]


@pytest.mark.asyncio
async def test_refresh_only_updates_owned_tokens(store: SqlTokenStore) -> None:
    await store.store_token("user-a", "realm-1", "a1", "r1", 3600)

    assert await store.refresh_token("user-b", "realm-1", "x", "y", 3600) is False
    assert await store.refresh_token("user-a", "realm-1", "a2", "r2", 7200) is True

    token = await store.get_token("user-a", "realm-1")
    assert token.access_token == "a2"
    assert token.refresh_token == "r2"


@pytest.mark.asyncio
async def test_revoke_soft_deletes_and_counts(store: SqlTokenStore, session_factory) -> None:
    await store.store_token("user-a", "realm-1", "a1", "r1", 3600)
    await store.store_token("user-a", "realm-2", "a2", "r2", 3600)

    assert await store.revoke_token("user-a", "realm-1") == 1
    assert await store.revoke_token("user-a", "realm-1") == 0
    assert [token.realm_id for token in await store.get_token("user-a")] == ["realm-2"]
    assert await store.revoke_token("user-a") == 1

    async with session_factory() as session:
        rows = (await session.execute(select(QBOTokens))).scalars().all()
    assert len(rows) == 2
    assert all(row.is_active is False for row in rows)

    changes = await store.get_admin_changes("user-a", "realm-1")
    assert changes[0].change_type == "revoke"
    assert changes[0].new_admin_id is None


@pytest.mark.asyncio
async def test_sync_user_upserts_profile(store: SqlTokenStore, session_factory) -> None:
    assert await store.sync_user("user-a", "old@example.com") is True
    assert await store.sync_user("user-a", "new@example.com") is True

    async with session_factory() as session:
        users = (await session.execute(select(Users))).scalars().all()
    assert len(users) == 1
    assert users[0].email == "new@example.com"
    assert users[0].last_synced_at is not None


@pytest.mark.asyncio
async def test_undecryptable_secret_surfaces_as_store_error(store: SqlTokenStore, session_factory) -> None:
    await store.store_token("user-a", "realm-1", "a1", "r1", 3600)
    rotated = SqlTokenStore(session_factory, Fernet.generate_key().decode("utf-8"))

    with pytest.raises(TokenStoreError, match="decrypt"):
        await rotated.get_token("user-a", "realm-1")


@pytest.mark.asyncio
async def test_company_name_is_saved_for_owner_only(store: SqlTokenStore) -> None:
    await store.store_token("user-a", "realm-1", "a1", "r1", 3600)

    assert await store.update_company_info("user-b", "realm-1", "Other Co") is False
    assert await store.update_company_info("user-a", "realm-1", "Acme Books") is True

    token = await store.get_token("user-a", "realm-1")
    assert token.company_name == "Acme Books"
