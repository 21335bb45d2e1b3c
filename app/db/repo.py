from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Sequence, Union

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import TokenStoreError
from app.core.security import decrypt_secret, encrypt_secret
from app.db.models import AdminChangeType, QBOAdminChanges, QBOTokens, Users
from app.schemas.token import AdminChange, StoreTokenResult, Token


DEFAULT_EXPIRES_IN = 3600

TokenLookup = Union[Token, list[Token], None]

logger = logging.getLogger("app.db.repo")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class StoreOutcome:
    token: QBOTokens
    change_type: Optional[str]
    previous_admin: Optional[str]


class TokenStore(Protocol):
    """Remote procedure contract of the persistent token store."""

    async def store_token(
        self,
        user_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        company_name: Optional[str] = None,
        is_sandbox: bool = False,
    ) -> StoreTokenResult: ...

    async def get_token(self, user_id: str, realm_id: Optional[str] = None) -> TokenLookup: ...

    async def refresh_token(
        self,
        user_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
    ) -> bool: ...

    async def revoke_token(self, user_id: str, realm_id: Optional[str] = None) -> int: ...

    async def get_admin_changes(self, user_id: str, realm_id: str) -> list[AdminChange]: ...

    async def sync_user(self, user_id: str, email: str) -> bool: ...

    async def update_company_info(self, user_id: str, realm_id: str, company_name: str) -> bool: ...


async def sync_user(session: AsyncSession, *, user_id: str, email: str) -> Users:
    result = await session.execute(select(Users).where(Users.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        user = Users(user_id=user_id, email=email or None)
        session.add(user)
    elif email:
        user.email = email
    user.last_synced_at = _now()
    await session.flush()
    return user


async def store_token(
    session: AsyncSession,
    *,
    user_id: str,
    realm_id: str,
    access_token_enc: str,
    refresh_token_enc: str,
    expires_at: datetime,
    company_name: Optional[str] = None,
    is_sandbox: bool = False,
) -> StoreOutcome:
    result = await session.execute(
        select(QBOTokens).where(QBOTokens.realm_id == realm_id).with_for_update()
    )
    existing = result.scalar_one_or_none()
    now = _now()

    if existing is None:
        token = QBOTokens(
            realm_id=realm_id,
            user_id=user_id,
            access_token_enc=access_token_enc,
            refresh_token_enc=refresh_token_enc,
            expires_at=expires_at,
            company_name=company_name,
            is_sandbox=is_sandbox,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(token)
        change_type: Optional[str] = AdminChangeType.INITIAL
        previous_admin = None
    else:
        previous_admin = existing.user_id if existing.user_id != user_id else None
        change_type = AdminChangeType.TRANSFER if previous_admin else None
        token = existing
        token.user_id = user_id
        token.access_token_enc = access_token_enc
        token.refresh_token_enc = refresh_token_enc
        token.expires_at = expires_at
        if company_name is not None:
            token.company_name = company_name
        token.is_sandbox = is_sandbox
        token.is_active = True
        token.updated_at = now

    await session.flush()

    if change_type is not None:
        session.add(
            QBOAdminChanges(
                realm_id=realm_id,
                previous_admin_id=previous_admin,
                new_admin_id=user_id,
                change_type=change_type,
                initiated_by=user_id,
                metadata_json={
                    "token_id": str(token.id),
                    "company_name": company_name,
                    "is_sandbox": is_sandbox,
                },
                created_at=now,
            )
        )
        await session.flush()

    return StoreOutcome(token=token, change_type=change_type, previous_admin=previous_admin)


async def get_active_tokens(
    session: AsyncSession,
    *,
    user_id: str,
    realm_id: Optional[str] = None,
) -> Sequence[QBOTokens]:
    stmt = select(QBOTokens).where(
        QBOTokens.user_id == user_id,
        QBOTokens.is_active.is_(True),
    )
    if realm_id:
        stmt = stmt.where(QBOTokens.realm_id == realm_id)
    stmt = stmt.order_by(QBOTokens.updated_at.desc())
    result = await session.execute(stmt)
    return result.scalars().all()


async def update_token_secrets(
    session: AsyncSession,
    *,
    user_id: str,
    realm_id: str,
    access_token_enc: str,
    refresh_token_enc: str,
    expires_at: datetime,
) -> bool:
    tokens = await get_active_tokens(session, user_id=user_id, realm_id=realm_id)
    if not tokens:
        return False
    token = tokens[0]
    token.access_token_enc = access_token_enc
    token.refresh_token_enc = refresh_token_enc
    token.expires_at = expires_at
    token.updated_at = _now()
    await session.flush()
    return True


async def set_company_name(
    session: AsyncSession,
    *,
    user_id: str,
    realm_id: str,
    company_name: str,
) -> bool:
    tokens = await get_active_tokens(session, user_id=user_id, realm_id=realm_id)
    if not tokens:
        return False
    tokens[0].company_name = company_name
    tokens[0].updated_at = _now()
    await session.flush()
    return True


async def revoke_tokens(
    session: AsyncSession,
    *,
    user_id: str,
    realm_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> int:
    tokens = await get_active_tokens(session, user_id=user_id, realm_id=realm_id)
    now = _now()
    for token in tokens:
        token.is_active = False
        token.updated_at = now
        session.add(
            QBOAdminChanges(
                realm_id=token.realm_id,
                previous_admin_id=token.user_id,
                new_admin_id=None,
                change_type=AdminChangeType.REVOKE,
                initiated_by=user_id,
                reason=reason,
                created_at=now,
            )
        )
    await session.flush()
    return len(tokens)


async def list_admin_changes(
    session: AsyncSession,
    *,
    user_id: str,
    realm_id: str,
) -> Sequence[QBOAdminChanges]:
    result = await session.execute(
        select(QBOAdminChanges)
        .where(
            QBOAdminChanges.realm_id == realm_id,
            or_(
                QBOAdminChanges.previous_admin_id == user_id,
                QBOAdminChanges.new_admin_id == user_id,
                QBOAdminChanges.initiated_by == user_id,
            ),
        )
        .order_by(QBOAdminChanges.created_at.desc())
    )
    return result.scalars().all()


class SqlTokenStore:
    """TokenStore backed by SQLAlchemy; every call runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], fernet_key: str):
        self._session_factory = session_factory
        self._fernet_key = fernet_key

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
        try:
            async with self._session_factory() as session:
                outcome = await store_token(
                    session,
                    user_id=user_id,
                    realm_id=realm_id,
                    access_token_enc=encrypt_secret(self._fernet_key, access_token),
                    refresh_token_enc=encrypt_secret(self._fernet_key, refresh_token),
                    expires_at=_now() + timedelta(seconds=expires_in),
                    company_name=company_name,
                    is_sandbox=is_sandbox,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to store token: {exc}") from exc

        logger.info(
            "token_stored",
            extra={
                "user_id": user_id,
                "realm_id": realm_id,
                "change_type": outcome.change_type or "update",
            },
        )
        return StoreTokenResult(
            success=True,
            admin_changed=outcome.change_type == AdminChangeType.TRANSFER,
            previous_admin=outcome.previous_admin,
        )

    async def get_token(self, user_id: str, realm_id: Optional[str] = None) -> TokenLookup:
        try:
            async with self._session_factory() as session:
                rows = await get_active_tokens(session, user_id=user_id, realm_id=realm_id)
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to get token: {exc}") from exc

        try:
            tokens = [self._to_schema(row) for row in rows]
        except ValueError as exc:
            raise TokenStoreError(f"Failed to decrypt stored token: {exc}") from exc
        if realm_id:
            return tokens[0] if tokens else None
        return tokens

    async def refresh_token(
        self,
        user_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
    ) -> bool:
        try:
            async with self._session_factory() as session:
                updated = await update_token_secrets(
                    session,
                    user_id=user_id,
                    realm_id=realm_id,
                    access_token_enc=encrypt_secret(self._fernet_key, access_token),
                    refresh_token_enc=encrypt_secret(self._fernet_key, refresh_token),
                    expires_at=_now() + timedelta(seconds=expires_in),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to refresh token: {exc}") from exc
        return updated

    async def revoke_token(self, user_id: str, realm_id: Optional[str] = None) -> int:
        try:
            async with self._session_factory() as session:
                count = await revoke_tokens(session, user_id=user_id, realm_id=realm_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to revoke token: {exc}") from exc
        return count

    async def get_admin_changes(self, user_id: str, realm_id: str) -> list[AdminChange]:
        try:
            async with self._session_factory() as session:
                rows = await list_admin_changes(session, user_id=user_id, realm_id=realm_id)
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to get admin changes: {exc}") from exc
        return [
            AdminChange.model_validate(row).model_copy(update={"created_at": _as_utc(row.created_at)})
            for row in rows
        ]

    async def sync_user(self, user_id: str, email: str) -> bool:
        try:
            async with self._session_factory() as session:
                await sync_user(session, user_id=user_id, email=email)
                await session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to sync user: {exc}") from exc
        return True

    async def update_company_info(self, user_id: str, realm_id: str, company_name: str) -> bool:
        try:
            async with self._session_factory() as session:
                updated = await set_company_name(
                    session,
                    user_id=user_id,
                    realm_id=realm_id,
                    company_name=company_name,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to update company info: {exc}") from exc
        return updated

    def _to_schema(self, row: QBOTokens) -> Token:
        return Token(
            id=row.id,
            realm_id=row.realm_id,
            user_id=row.user_id,
            access_token=decrypt_secret(self._fernet_key, row.access_token_enc),
            refresh_token=decrypt_secret(self._fernet_key, row.refresh_token_enc),
            expires_at=_as_utc(row.expires_at),
            company_name=row.company_name,
            is_sandbox=row.is_sandbox,
            is_active=row.is_active,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )
