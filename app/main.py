from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from app.api import routes_auth, routes_qbo, routes_tokens
from app.core.config import Settings, get_settings
from app.core import logging as logging_utils
from app.core.errors import TokenServiceError
from app.db.repo import SqlTokenStore, TokenStore
from app.db.session import get_engine, get_session_factory
from app.services.qbo_oauth import QuickBooksOAuthError
from app.services.token_manager import TokenManager, TokenManagerConfig

RequestHandler = Callable[[Request], Awaitable[Response]]

_TOKEN_ERROR_STATUS = {
    "AUTH_REQUIRED": status.HTTP_401_UNAUTHORIZED,
    "TOKEN_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "TOKEN_STORE_ERROR": status.HTTP_502_BAD_GATEWAY,
}


async def enforce_api_key(
    api_key_header: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if api_key_header is None or api_key_header != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


def _error_response(request: Request, status_code: int, code, message: str, details=None) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    payload = {
        "code": code,
        "message": message,
        "details": details,
        "correlation_id": request_id,
    }
    response = JSONResponse(status_code=status_code, content=payload)
    if request_id:
        response.headers["X-Request-Id"] = request_id
    return response


def create_app(
    settings: Optional[Settings] = None,
    *,
    token_store: Optional[TokenStore] = None,
    qbo_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the API; tests pass settings, a token store and an HTTP transport directly."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging_utils.configure_logging()
        logger = logging.getLogger("app.lifespan")
        store = token_store
        if store is None:
            store = SqlTokenStore(get_session_factory(settings.database_url), settings.fernet_key)
        app.state.token_manager = TokenManager(store, TokenManagerConfig.from_settings(settings))
        app.state.qbo_transport = qbo_transport
        logger.info(
            "application_startup",
            extra={"environment": settings.environment},
        )
        try:
            yield
        finally:
            app.state.token_manager.clear()
            if token_store is None:
                await get_engine(settings.database_url).dispose()
            logger.info("application_shutdown")

    app = FastAPI(
        title="CPA Dashboard API",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: RequestHandler):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        logging_utils.set_request_context(request_id=request_id)
        start = perf_counter()
        logger = logging.getLogger("app.request")
        request.state.response_status = None
        try:
            response = await call_next(request)
            request.state.response_status = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        except Exception:
            request.state.response_status = status.HTTP_500_INTERNAL_SERVER_ERROR
            raise
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": request.state.response_status,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            logging_utils.clear_request_context()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return _error_response(request, exc.status_code, exc.status_code, exc.detail)
        return _error_response(request, exc.status_code, exc.status_code, "Request failed", exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            exc.errors(),
        )

    @app.exception_handler(TokenServiceError)
    async def token_error_handler(request: Request, exc: TokenServiceError) -> JSONResponse:
        status_code = _TOKEN_ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        logging.getLogger("app.errors").warning(
            "token_service_error",
            extra={"error_code": exc.code, "path": request.url.path},
        )
        return _error_response(request, status_code, exc.code, str(exc))

    @app.exception_handler(QuickBooksOAuthError)
    async def oauth_error_handler(request: Request, exc: QuickBooksOAuthError) -> JSONResponse:
        return _error_response(request, status.HTTP_502_BAD_GATEWAY, "OAUTH_ERROR", str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logging_utils.log_unhandled_exception(
            "unhandled_error",
            path=request.url.path,
            method=request.method,
            user_id=logging_utils.user_id_ctx.get(),
        )
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
        )

    if not settings.allow_docs_without_auth:
        app.router.dependencies.append(Depends(enforce_api_key))

    protected_router = APIRouter(dependencies=[Depends(enforce_api_key)])
    protected_router.include_router(routes_auth.router)
    protected_router.include_router(routes_tokens.router)
    protected_router.include_router(routes_qbo.router)
    app.include_router(protected_router)
    app.include_router(routes_auth.public_router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    return app


def run() -> None:
    uvicorn.run(
        "app.main:create_app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        factory=True,
    )


if __name__ == "__main__":
    run()
