"""Pytest configuration and fakes shared across the suite."""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import Settings
from app.db.models import Base
from app.schemas.token import AdminChange, StoreTokenResult, Token


def make_token(
    user_id: str = "user-a",
    realm_id: str = "realm-1",
    *,
    expires_in: timedelta = timedelta(hours=48),
    access_token: str = "access-token",
    refresh_token: str = "refresh-token",
) -> Token:
    now = datetime.now(timezone.utc)
    return Token(
        id=uuid.uuid4(),
        realm_id=realm_id,
        user_id=user_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + expires_in,
        created_at=now,
        updated_at=now,
    )


class FakeTokenStore:
    """In-memory token store that counts calls and can be told to fail or block."""

    def __init__(self) -> None:
        self.tokens: dict[str, Token] = {}
        self.admin_changes: list[AdminChange] = []
        self.users: dict[str, str] = {}
        self.calls: Counter[str] = Counter()
        self.failures: dict[str, list[Exception]] = {}
        self.gates: dict[str, asyncio.Event] = {}

    def add(self, token: Token) -> Token:
        self.tokens[token.realm_id] = token
        return token

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def hold(self, method: str) -> asyncio.Event:
        gate = self.gates[method] = asyncio.Event()
        return gate

    async def _pause(self, method: str) -> None:
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def store_token(
        self,
        user_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        company_name: Optional[str] = None,
        is_sandbox: bool = False,
    ) -> StoreTokenResult:
        self._enter("store_token")
        await self._pause("store_token")
        existing = self.tokens.get(realm_id)
        previous_admin = existing.user_id if existing and existing.user_id != user_id else None
        token = make_token(
            user_id,
            realm_id,
            expires_in=timedelta(seconds=expires_in),
            access_token=access_token,
            refresh_token=refresh_token,
        ).model_copy(update={"company_name": company_name, "is_sandbox": is_sandbox})
        self.tokens[realm_id] = token
        if existing is None or previous_admin:
            self.admin_changes.append(
                AdminChange(
                    id=uuid.uuid4(),
                    realm_id=realm_id,
                    previous_admin_id=previous_admin,
                    new_admin_id=user_id,
                    change_type="transfer" if previous_admin else "initial",
                    initiated_by=user_id,
                    created_at=datetime.now(timezone.utc),
                )
            )
        return StoreTokenResult(success=True, admin_changed=bool(previous_admin), previous_admin=previous_admin)

    async def get_token(self, user_id: str, realm_id: Optional[str] = None):
        self._enter("get_token")
        await self._pause("get_token")
        owned = [
            token.model_copy()
            for token in self.tokens.values()
            if token.user_id == user_id and token.is_active
        ]
        if realm_id:
            matches = [token for token in owned if token.realm_id == realm_id]
            return matches[0] if matches else None
        return owned

    async def refresh_token(
        self,
        user_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
    ) -> bool:
        self._enter("refresh_token")
        await self._pause("refresh_token")
        token = self.tokens.get(realm_id)
        if token is None or token.user_id != user_id or not token.is_active:
            return False
        self.tokens[realm_id] = token.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_at": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            }
        )
        return True

    async def revoke_token(self, user_id: str, realm_id: Optional[str] = None) -> int:
        self._enter("revoke_token")
        count = 0
        for key, token in list(self.tokens.items()):
            if token.user_id != user_id or not token.is_active:
                continue
            if realm_id and token.realm_id != realm_id:
                continue
            self.tokens[key] = token.model_copy(update={"is_active": False})
            count += 1
        return count

    async def get_admin_changes(self, user_id: str, realm_id: str) -> list[AdminChange]:
        self._enter("get_admin_changes")
        return [
            change
            for change in reversed(self.admin_changes)
            if change.realm_id == realm_id
            and user_id in (change.previous_admin_id, change.new_admin_id, change.initiated_by)
        ]

    async def update_company_info(self, user_id: str, realm_id: str, company_name: str) -> bool:
        self._enter("update_company_info")
        token = self.tokens.get(realm_id)
        if token is None or token.user_id != user_id or not token.is_active:
            return False
        self.tokens[realm_id] = token.model_copy(update={"company_name": company_name})
        return True

    async def sync_user(self, user_id: str, email: str) -> bool:
        self._enter("sync_user")
        self.users[user_id] = email
        return True


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_store() -> FakeTokenStore:
    return FakeTokenStore()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        API_KEY="test-api-key",
        FERNET_KEY=Fernet.generate_key().decode("utf-8"),
        QBO_CLIENT_ID="client-id",
        QBO_CLIENT_SECRET="client-secret",
        QBO_REDIRECT_URI="https://example.com/callback",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'tokens.db'}",
        RETRY_MAX_WAIT=15,
    )



@pytest_asyncio.fixture
async def session_factory(settings: Settings):
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()
