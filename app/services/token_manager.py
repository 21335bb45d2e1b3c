"""In-process choke point for reading and mutating a user's QuickBooks credentials.

The manager memoizes the *task* performing a backend read, not its result, so
concurrent callers asking for the same key share one round trip. Mutations
(store, refresh, revoke) drop the cache before they reach the backend; any read
issued after the mutation starts misses the cache and goes to the store fresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import Settings
from app.core.errors import AuthenticationRequiredError, TokenStoreError
from app.db.repo import DEFAULT_EXPIRES_IN, TokenLookup, TokenStore
from app.schemas.token import AdminChange, StoreTokenParams, StoreTokenResult, Token


T = TypeVar("T")
CacheKey = tuple[str, Optional[str]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenManagerConfig:
    cache_ttl_seconds: float = 60.0
    refresh_threshold_hours: float = 12.0
    max_retries: int = 3
    retry_backoff_seconds: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenManagerConfig":
        return cls(
            cache_ttl_seconds=settings.token_cache_ttl_seconds,
            refresh_threshold_hours=settings.token_refresh_threshold_hours,
            max_retries=settings.token_refresh_retry_max,
            retry_backoff_seconds=settings.token_refresh_backoff_seconds,
        )

    @property
    def refresh_threshold(self) -> timedelta:
        return timedelta(hours=self.refresh_threshold_hours)


@dataclass
class _CacheEntry(Generic[T]):
    created_at: float
    task: "asyncio.Task[T]"


class TaskCache(Generic[T]):
    """Maps a key to a shared task for ``ttl_seconds`` after insertion."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, _CacheEntry[T]] = {}

    def get_or_create(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> tuple["asyncio.Task[T]", bool]:
        # No await between lookup and insert: concurrent callers always find the placeholder.
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and now - entry.created_at < self.ttl_seconds:
            return entry.task, True
        task = asyncio.ensure_future(factory())
        task.add_done_callback(_consume_exception)
        self._entries[key] = _CacheEntry(created_at=now, task=task)
        self._purge_expired(now)
        return task, False

    def discard(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self, predicate: Optional[Callable[[Hashable], bool]] = None) -> None:
        if predicate is None:
            self._entries.clear()
            return
        for key in [key for key in self._entries if predicate(key)]:
            del self._entries[key]

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() - entry.created_at < self.ttl_seconds

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now - entry.created_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Failures are delivered to every awaiting caller; this only silences
    # "exception was never retrieved" for entries nobody awaited again.
    if not task.cancelled():
        task.exception()


class TokenManager:
    def __init__(
        self,
        store: TokenStore,
        config: TokenManagerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.config = config or TokenManagerConfig()
        self._now = now
        self._sleep = sleep
        self._tokens: TaskCache[TokenLookup] = TaskCache(self.config.cache_ttl_seconds, clock)
        self._syncs: TaskCache[bool] = TaskCache(self.config.cache_ttl_seconds, clock)
        self.logger = logging.getLogger("app.services.token_manager")

    async def get_token(self, user_id: str, realm_id: Optional[str] = None) -> TokenLookup:
        self._require_user(user_id)
        key: CacheKey = (user_id, realm_id or None)
        task, cached = self._tokens.get_or_create(key, lambda: self._fetch_token(user_id, realm_id))
        if cached:
            self.logger.debug("token_cache_hit", extra={"user_id": user_id, "realm_id": realm_id})
        return await asyncio.shield(task)

    async def sync_user(self, user_id: str, email: str) -> bool:
        self._require_user(user_id)
        task, _ = self._syncs.get_or_create((user_id, email), lambda: self._perform_sync(user_id, email))
        return await asyncio.shield(task)

    async def store_token(self, user_id: str, params: StoreTokenParams) -> StoreTokenResult:
        self._require_user(user_id)
        self._tokens.clear()
        result = await self.store.store_token(
            user_id,
            params.realm_id,
            params.access_token,
            params.refresh_token,
            params.expires_in or DEFAULT_EXPIRES_IN,
            company_name=params.company_name,
            is_sandbox=params.is_sandbox,
        )
        if result.admin_changed:
            self.logger.warning(
                "qbo_admin_transferred",
                extra={
                    "user_id": user_id,
                    "realm_id": params.realm_id,
                    "previous_admin": result.previous_admin,
                },
            )
        return result

    async def refresh_token(
        self,
        user_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: Optional[int] = None,
    ) -> bool:
        self._require_user(user_id)
        self._tokens.clear()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_backoff_seconds, exp_base=2),
            retry=retry_if_exception_type(TokenStoreError),
            before_sleep=self._log_refresh_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                self._tokens.clear()
                updated = await self.store.refresh_token(
                    user_id,
                    realm_id,
                    access_token,
                    refresh_token,
                    expires_in or DEFAULT_EXPIRES_IN,
                )
                self.logger.info(
                    "token_refreshed",
                    extra={
                        "user_id": user_id,
                        "realm_id": realm_id,
                        "updated": updated,
                        "attempt": attempt.retry_state.attempt_number,
                    },
                )
                return updated
        raise TokenStoreError("Token refresh did not run")

    async def revoke_token(self, user_id: str, realm_id: Optional[str] = None) -> int:
        self._require_user(user_id)
        self._tokens.clear()
        count = await self.store.revoke_token(user_id, realm_id)
        self.logger.info(
            "token_revoked",
            extra={"user_id": user_id, "realm_id": realm_id, "count": count},
        )
        return count

    async def update_company_info(self, user_id: str, realm_id: str, company_name: str) -> bool:
        self._require_user(user_id)
        self._tokens.clear()
        return await self.store.update_company_info(user_id, realm_id, company_name)

    async def get_admin_changes(self, user_id: str, realm_id: str) -> list[AdminChange]:
        self._require_user(user_id)
        return await self.store.get_admin_changes(user_id, realm_id)

    def invalidate(self, user_id: str, realm_id: Optional[str]) -> None:
        self._tokens.discard((user_id, realm_id or None))

    def clear(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._tokens.clear()
            self._syncs.clear()
            return
        self._tokens.clear(lambda key: key[0] == user_id)
        self._syncs.clear(lambda key: key[0] == user_id)

    def is_token_expired(self, token: Token) -> bool:
        return token.expires_at <= self._now()

    def needs_refresh(self, token: Token) -> bool:
        return self.get_token_expiration_time(token) <= self.config.refresh_threshold

    def get_token_expiration_time(self, token: Token) -> timedelta:
        return token.expires_at - self._now()

    async def _fetch_token(self, user_id: str, realm_id: Optional[str]) -> TokenLookup:
        self.logger.info("token_fetch_started", extra={"user_id": user_id, "realm_id": realm_id})
        result = await self.store.get_token(user_id, realm_id)
        if not result:
            return result
        tokens = result if isinstance(result, list) else [result]
        for token in tokens:
            if self.needs_refresh(token):
                token.needs_refresh = True
                remaining = self.get_token_expiration_time(token)
                self.logger.warning(
                    "token_needs_refresh",
                    extra={
                        "user_id": user_id,
                        "realm_id": token.realm_id,
                        "expires_in_minutes": round(remaining.total_seconds() / 60, 1),
                    },
                )
        return result

    async def _perform_sync(self, user_id: str, email: str) -> bool:
        self.logger.info("user_sync_started", extra={"user_id": user_id})
        return await self.store.sync_user(user_id, email)

    def _log_refresh_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning(
            "token_refresh_retry",
            extra={
                "attempt": retry_state.attempt_number,
                "delay_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
                "error": str(exc) if exc else None,
            },
        )

    @staticmethod
    def _require_user(user_id: Optional[str]) -> None:
        if not user_id:
            raise AuthenticationRequiredError()
