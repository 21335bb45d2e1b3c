from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.services.qbo_client import QuickBooksClient
from app.services.qbo_oauth import QuickBooksOAuthService
from app.services.token_manager import TokenManager


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_current_user_id(
    user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    user_id = user_id.strip()
    logging_utils.set_request_context(user_id=user_id)
    return user_id


def get_oauth_service(request: Request, settings: Settings = Depends(get_settings)) -> QuickBooksOAuthService:
    return QuickBooksOAuthService(settings, transport=getattr(request.app.state, "qbo_transport", None))


def get_qbo_client(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    manager: TokenManager = Depends(get_token_manager),
    settings: Settings = Depends(get_settings),
) -> QuickBooksClient:
    return QuickBooksClient(
        manager,
        user_id,
        settings,
        transport=getattr(request.app.state, "qbo_transport", None),
    )
