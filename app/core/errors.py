from __future__ import annotations


class TokenServiceError(RuntimeError):
    """Base class for failures raised by the token lifecycle layer."""

    code = "TOKEN_ERROR"


class AuthenticationRequiredError(TokenServiceError):
    code = "AUTH_REQUIRED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class TokenNotFoundError(TokenServiceError):
    code = "TOKEN_NOT_FOUND"

    def __init__(self, realm_id: str | None):
        self.realm_id = realm_id
        super().__init__(f"No QuickBooks token stored for realm {realm_id}")


class TokenStoreError(TokenServiceError):
    """A store/get/refresh/revoke call against the token database failed."""

    code = "TOKEN_STORE_ERROR"
