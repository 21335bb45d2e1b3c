from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


TokenStatus = Literal["active", "expiring", "expired"]
AdminChangeType = Literal["initial", "transfer", "revoke"]


class Token(BaseModel):
    """A decrypted QuickBooks credential pair scoped to one realm and one owner."""

    id: uuid.UUID
    realm_id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    company_name: Optional[str] = None
    is_sandbox: bool = False
    is_active: bool = True
    created_at: datetime
    updated_at: datetime
    needs_refresh: bool = Field(default=False, exclude=True)


class StoreTokenParams(BaseModel):
    realm_id: str = Field(min_length=1, max_length=64)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_in: Optional[int] = Field(default=None, gt=0)
    company_name: Optional[str] = Field(default=None, max_length=255)
    is_sandbox: bool = False


class StoreTokenResult(BaseModel):
    success: bool
    admin_changed: bool = False
    previous_admin: Optional[str] = None


class AdminChange(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    realm_id: str
    previous_admin_id: Optional[str] = None
    new_admin_id: Optional[str] = None
    change_type: AdminChangeType
    initiated_by: str
    reason: Optional[str] = None
    created_at: datetime


class TokenSummary(BaseModel):
    realm_id: str
    company_name: Optional[str] = None
    is_sandbox: bool
    status: TokenStatus
    needs_refresh: bool
    expires_at: datetime
    access_token: str
    created_at: datetime
    updated_at: datetime


class TokenListResponse(BaseModel):
    user_id: str
    tokens: list[TokenSummary]


class TokenRefreshResponse(BaseModel):
    realm_id: str
    refreshed: bool
    expires_at: datetime


class TokenRevokeResponse(BaseModel):
    revoked: int


class UserSyncRequest(BaseModel):
    email: str = Field(default="", max_length=320)
