from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from app.core.config import Settings, get_settings
from app.core.http import RetryableHTTPException, get_async_client, request_with_retry_and_backoff
from app.core.security import mask_secret
from app.schemas.token import Token
from app.services.token_manager import TokenManager


class QuickBooksOAuthError(RuntimeError):
    pass


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime
    scopes: list[str]
    token_type: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QuickBooksOAuthService:
    AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self.logger = logging.getLogger("app.services.qbo_oauth")

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.qbo_client_id,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
            "response_type": "code",
            "scope": self.settings.qbo_scope,
            "state": state,
        }
        url = httpx.URL(self.AUTH_URL, params=params)
        self.logger.info(
            "oauth_authorization_url_generated",
            extra={"environment": self.settings.environment},
        )
        return str(url)

    async def exchange_authorization_code(self, *, code: str, realm_id: str) -> TokenBundle:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
        }
        response = await self._token_request(data)
        return self._parse_token_response(response, realm_id)

    async def refresh_tokens(self, *, refresh_token: str, realm_id: str) -> TokenBundle:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        response = await self._token_request(data)
        return self._parse_token_response(response, realm_id)

    async def revoke_at_intuit(self, token: Token) -> bool:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        async with get_async_client(self.settings, transport=self._transport) as client:
            try:
                response = await request_with_retry_and_backoff(
                    client,
                    "POST",
                    self.REVOKE_URL,
                    json={"token": token.refresh_token},
                    headers=headers,
                    settings=self.settings,
                )
            except (RetryableHTTPException, httpx.HTTPError) as exc:
                self.logger.warning(
                    "oauth_revoke_failed",
                    extra={"realm_id": token.realm_id, "error": str(exc)},
                )
                return False
        revoked = response.status_code == 200
        if not revoked:
            self.logger.warning(
                "oauth_revoke_rejected",
                extra={"realm_id": token.realm_id, "status": response.status_code},
            )
        return revoked

    async def rotate(self, manager: TokenManager, user_id: str, token: Token) -> TokenBundle:
        """Run the refresh grant with Intuit and persist the new pair through the manager."""
        bundle = await self.refresh_tokens(refresh_token=token.refresh_token, realm_id=token.realm_id)
        updated = await manager.refresh_token(
            user_id,
            token.realm_id,
            bundle.access_token,
            bundle.refresh_token,
            bundle.expires_in,
        )
        if not updated:
            raise QuickBooksOAuthError(f"Token for realm {token.realm_id} is no longer owned by this user")
        self.logger.info(
            "credential_rotated",
            extra={
                "user_id": user_id,
                "realm_id": token.realm_id,
                "access_token": mask_secret(bundle.access_token),
            },
        )
        return bundle

    async def _token_request(self, data: dict[str, str]) -> dict:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        async with get_async_client(self.settings, transport=self._transport) as client:
            try:
                response = await request_with_retry_and_backoff(
                    client,
                    "POST",
                    self.TOKEN_URL,
                    data=data,
                    headers=headers,
                    settings=self.settings,
                )
            except RetryableHTTPException as exc:
                response = exc.response
            except httpx.HTTPError as exc:
                raise QuickBooksOAuthError(f"Token endpoint unreachable: {exc}") from exc
        if response.status_code >= 400:
            self.logger.error(
                "oauth_token_error",
                extra={
                    "status": response.status_code,
                    "body": response.text,
                },
            )
            raise QuickBooksOAuthError(
                f"Failed to obtain tokens from Intuit (status {response.status_code}): {response.text}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise QuickBooksOAuthError("Token endpoint returned a non-JSON body") from exc

    def _parse_token_response(self, payload: dict, realm_id: str) -> TokenBundle:
        now = _now()
        try:
            access_expires_in = int(payload["expires_in"])
            refresh_expires_in = int(payload.get("x_refresh_token_expires_in", 0))
            access_token = payload["access_token"]
            refresh_token = payload["refresh_token"]
            scope_raw = payload.get("scope", "")
            token_type = payload.get("token_type", "Bearer")
        except (KeyError, TypeError, ValueError) as exc:
            raise QuickBooksOAuthError("Incomplete token response") from exc

        scopes = [scope for scope in scope_raw.split() if scope]

        bundle = TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_expires_in,
            access_expires_at=now + timedelta(seconds=access_expires_in),
            refresh_expires_at=now + timedelta(seconds=refresh_expires_in),
            scopes=scopes,
            token_type=token_type,
        )

        self.logger.info(
            "token_bundle_parsed",
            extra={
                "realm_id": realm_id,
                "access_expires_at": bundle.access_expires_at.isoformat(),
                "refresh_expires_at": bundle.refresh_expires_at.isoformat(),
            },
        )
        return bundle

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"
