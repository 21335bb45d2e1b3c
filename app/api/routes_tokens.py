from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_user_id, get_oauth_service, get_token_manager
from app.core import logging as logging_utils
from app.core.errors import TokenNotFoundError
from app.core.security import mask_secret
from app.schemas.token import (
    AdminChange,
    StoreTokenParams,
    StoreTokenResult,
    Token,
    TokenListResponse,
    TokenRefreshResponse,
    TokenRevokeResponse,
    TokenStatus,
    TokenSummary,
)
from app.services.qbo_oauth import QuickBooksOAuthError, QuickBooksOAuthService
from app.services.token_manager import TokenManager


router = APIRouter(prefix="/tokens", tags=["tokens"])
logger = logging.getLogger("app.api.tokens")


@router.get("", response_model=TokenListResponse)
async def list_tokens(
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> TokenListResponse:
    tokens = await manager.get_token(user_id)
    items = tokens if isinstance(tokens, list) else ([tokens] if tokens else [])
    return TokenListResponse(
        user_id=user_id,
        tokens=[_summarize(manager, token) for token in items],
    )


@router.post("", response_model=StoreTokenResult, status_code=status.HTTP_201_CREATED)
async def store_token(
    payload: StoreTokenParams,
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> StoreTokenResult:
    logging_utils.set_request_context(realm_id=payload.realm_id)
    return await manager.store_token(user_id, payload)


@router.get("/{realm_id}", response_model=TokenSummary)
async def get_token(
    realm_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> TokenSummary:
    token = await _load_token(manager, user_id, realm_id)
    return _summarize(manager, token)


@router.post("/{realm_id}/refresh", response_model=TokenRefreshResponse)
async def refresh_token(
    realm_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
    oauth: QuickBooksOAuthService = Depends(get_oauth_service),
) -> TokenRefreshResponse:
    token = await _load_token(manager, user_id, realm_id)
    try:
        bundle = await oauth.rotate(manager, user_id, token)
    except QuickBooksOAuthError as exc:
        logger.error(
            "token_refresh_failed",
            extra={"user_id": user_id, "realm_id": realm_id},
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to refresh QuickBooks token",
        ) from exc
    return TokenRefreshResponse(
        realm_id=realm_id,
        refreshed=True,
        expires_at=bundle.access_expires_at,
    )


@router.delete("", response_model=TokenRevokeResponse)
async def revoke_all_tokens(
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> TokenRevokeResponse:
    count = await manager.revoke_token(user_id)
    return TokenRevokeResponse(revoked=count)


@router.delete("/{realm_id}", response_model=TokenRevokeResponse)
async def revoke_token(
    realm_id: str,
    revoke_at_intuit: bool = Query(default=False),
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
    oauth: QuickBooksOAuthService = Depends(get_oauth_service),
) -> TokenRevokeResponse:
    logging_utils.set_request_context(realm_id=realm_id)
    if revoke_at_intuit:
        token = await manager.get_token(user_id, realm_id)
        if isinstance(token, Token):
            await oauth.revoke_at_intuit(token)
    count = await manager.revoke_token(user_id, realm_id)
    return TokenRevokeResponse(revoked=count)


@router.get("/{realm_id}/admin-changes", response_model=list[AdminChange])
async def list_admin_changes(
    realm_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> list[AdminChange]:
    return await manager.get_admin_changes(user_id, realm_id)


async def _load_token(manager: TokenManager, user_id: str, realm_id: Optional[str]) -> Token:
    logging_utils.set_request_context(realm_id=realm_id)
    token = await manager.get_token(user_id, realm_id)
    if not isinstance(token, Token):
        raise TokenNotFoundError(realm_id)
    return token


def _summarize(manager: TokenManager, token: Token) -> TokenSummary:
    status_value: TokenStatus
    if manager.is_token_expired(token):
        status_value = "expired"
    elif manager.needs_refresh(token):
        status_value = "expiring"
    else:
        status_value = "active"
    return TokenSummary(
        realm_id=token.realm_id,
        company_name=token.company_name,
        is_sandbox=token.is_sandbox,
        status=status_value,
        needs_refresh=token.needs_refresh or manager.needs_refresh(token),
        expires_at=token.expires_at,
        access_token=mask_secret(token.access_token),
        created_at=token.created_at,
        updated_at=token.updated_at,
    )
