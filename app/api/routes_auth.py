from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from app.api.deps import get_current_user_id, get_oauth_service, get_token_manager
from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.core.errors import TokenServiceError
from app.core.security import decode_oauth_state, encode_oauth_state
from app.schemas.token import StoreTokenParams, UserSyncRequest
from app.services.qbo_client import QuickBooksClient
from app.services.qbo_oauth import QuickBooksOAuthError, QuickBooksOAuthService
from app.services.token_manager import TokenManager


router = APIRouter(prefix="/auth", tags=["auth"])
public_router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("app.api.auth")

OAUTH_STATE_MAX_AGE_SECONDS = 600


@router.get("/connect", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def connect_oauth(
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
    oauth: QuickBooksOAuthService = Depends(get_oauth_service),
):
    state_payload = {
        "user_id": user_id,
        "nonce": str(uuid.uuid4()),
    }
    state = encode_oauth_state(settings.fernet_key, state_payload)
    auth_url = oauth.build_authorization_url(state=state)
    logger.info("oauth_connect_redirect", extra={"user_id": user_id})
    return RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@public_router.get("/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    realmId: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    oauth: QuickBooksOAuthService = Depends(get_oauth_service),
    manager: TokenManager = Depends(get_token_manager),
):
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {error_description or error}",
        )
    if not code or not state or not realmId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth parameters",
        )

    try:
        state_payload = decode_oauth_state(
            settings.fernet_key,
            state,
            max_age_seconds=OAUTH_STATE_MAX_AGE_SECONDS,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    user_id = state_payload.get("user_id", "")
    logging_utils.set_request_context(user_id=user_id, realm_id=realmId)

    try:
        bundle = await oauth.exchange_authorization_code(code=code, realm_id=realmId)
    except QuickBooksOAuthError as exc:
        logger.error("oauth_exchange_failed", extra={"user_id": user_id, "realm_id": realmId})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to exchange authorization code",
        ) from exc

    result = await manager.store_token(
        user_id,
        StoreTokenParams(
            realm_id=realmId,
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            expires_in=bundle.expires_in,
            is_sandbox=settings.environment == "sandbox",
        ),
    )

    company_name = await _record_company_name(
        QuickBooksClient(manager, user_id, settings, transport=getattr(request.app.state, "qbo_transport", None)),
        realmId,
    )

    logger.info(
        "oauth_callback_completed",
        extra={
            "user_id": user_id,
            "realm_id": realmId,
            "admin_changed": result.admin_changed,
        },
    )

    return {
        "message": "OAuth flow completed",
        "realm_id": realmId,
        "environment": settings.environment,
        "access_expires_at": bundle.access_expires_at,
        "refresh_expires_at": bundle.refresh_expires_at,
        "scopes": bundle.scopes,
        "company_name": company_name,
        **result.model_dump(),
    }


async def _record_company_name(client: QuickBooksClient, realm_id: str) -> Optional[str]:
    """Best effort: a failed lookup never fails the connection itself."""
    result = await client.get_company_info(realm_id)
    company_name = None
    if result.success and isinstance(result.data, dict):
        company_name = (result.data.get("CompanyInfo") or {}).get("CompanyName")
    if not company_name:
        logger.warning(
            "oauth_company_info_unavailable",
            extra={
                "realm_id": realm_id,
                "error_code": result.error.code if result.error else None,
            },
        )
        return None
    try:
        await client.tokens.update_company_info(client.user_id, realm_id, company_name)
    except TokenServiceError as exc:
        logger.warning(
            "oauth_company_info_not_saved",
            extra={"realm_id": realm_id, "error": str(exc)},
        )
        return None
    return company_name


@router.post("/sync")
async def sync_user(
    payload: UserSyncRequest,
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> dict[str, bool]:
    synced = await manager.sync_user(user_id, payload.email)
    return {"success": synced}


@router.post("/signout", status_code=status.HTTP_204_NO_CONTENT)
async def sign_out(
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
) -> Response:
    manager.clear(user_id)
    logger.info("user_signed_out", extra={"user_id": user_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
