from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.core.errors import AuthenticationRequiredError, TokenServiceError
from app.core.http import (
    RetryableHTTPException,
    calculate_wait,
    get_async_client,
    parse_retry_after,
    should_retry,
)
from app.schemas.qbo import HttpMethod, QBOError, QBOResult
from app.schemas.token import Token
from app.services.token_manager import TokenManager


REPORT_TYPES: dict[str, str] = {
    "profit_loss": "ProfitAndLoss",
    "balance_sheet": "BalanceSheet",
    "cash_flow": "CashFlow",
    "trial_balance": "TrialBalance",
    "general_ledger": "GeneralLedger",
    "aged_receivables": "AgedReceivables",
    "aged_payables": "AgedPayables",
}


class UnknownReportError(ValueError):
    pass


class TokenRejectedError(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__("QuickBooks rejected the access token")


def resolve_report_name(report: str) -> str:
    if report in REPORT_TYPES:
        return REPORT_TYPES[report]
    if report in REPORT_TYPES.values():
        return report
    raise UnknownReportError(f"Unsupported report type: {report}")


class QuickBooksClient:
    """Authenticated access to the QuickBooks REST API for one signed-in user.

    Tokens are read through the shared TokenManager and never refreshed here.
    Every call resolves to a QBOResult; transport failures, throttling and
    rejected tokens are retried within ``settings.retry_max_attempts``.
    """

    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"
    MINOR_VERSION = "65"

    def __init__(
        self,
        token_manager: TokenManager,
        user_id: str,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tokens = token_manager
        self.user_id = user_id
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep
        self.logger = logging.getLogger("app.services.qbo")

    async def request(
        self,
        realm_id: str,
        *,
        endpoint: str,
        method: HttpMethod = "GET",
        body: Any = None,
        query_params: Optional[dict[str, Any]] = None,
        accept: str = "application/json",
    ) -> QBOResult:
        url = self._build_url(realm_id, endpoint)
        params = {"minorversion": self.MINOR_VERSION, **(query_params or {})}
        max_attempts = self.settings.retry_max_attempts
        attempts = 0
        start = perf_counter()

        try:
            async with get_async_client(self.settings, transport=self._transport) as client:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(max_attempts),
                    retry=retry_if_exception_type(
                        (RetryableHTTPException, TokenRejectedError, httpx.TransportError)
                    ),
                    wait=self._wait,
                    before_sleep=self._log_retry,
                    sleep=self._sleep,
                    reraise=True,
                ):
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        result = await self._send_once(
                            client,
                            realm_id,
                            method=method,
                            url=url,
                            params=params,
                            body=body,
                            accept=accept,
                            retry_on_unauthorized=attempts < max_attempts,
                        )
        except RetryableHTTPException as exc:
            error = self._unwrap_error(exc.response)
            result = QBOResult.failure(
                "REQUEST_FAILED",
                f"QuickBooks request failed after {attempts} attempts",
                detail=error.detail or error.message,
                status_code=exc.response.status_code,
            )
        except httpx.HTTPError as exc:
            result = QBOResult.failure(
                "REQUEST_FAILED",
                f"QuickBooks request failed after {attempts} attempts",
                detail=f"{type(exc).__name__}: {exc}",
            )

        latency_ms = (perf_counter() - start) * 1000
        result = result.model_copy(update={"attempts": attempts, "latency_ms": round(latency_ms, 2)})
        logging_utils.log_qbo_request_finished(
            user_id=self.user_id,
            realm_id=realm_id,
            method=method,
            endpoint=endpoint,
            attempts=attempts,
            status_code=result.status_code,
            latency_ms=latency_ms,
            result="success" if result.success else "error",
            error_code=result.error.code if result.error else None,
            error_message=result.error.message if result.error else None,
            qbo_error_details=result.error.detail if result.error else None,
        )
        return result

    async def get_company_info(self, realm_id: str) -> QBOResult:
        return await self.request(realm_id, endpoint=f"companyinfo/{realm_id}")

    async def query(self, realm_id: str, statement: str) -> QBOResult:
        return await self.request(
            realm_id,
            endpoint="query",
            query_params={"query": statement.strip()},
        )

    async def create(self, realm_id: str, entity: str, payload: dict[str, Any]) -> QBOResult:
        return await self.request(
            realm_id,
            endpoint=entity.lower(),
            method="POST",
            body=payload,
        )

    async def update(
        self,
        realm_id: str,
        entity: str,
        payload: dict[str, Any],
        *,
        sparse: bool = True,
    ) -> QBOResult:
        body = {**payload, "sparse": sparse}
        return await self.request(
            realm_id,
            endpoint=entity.lower(),
            method="POST",
            body=body,
            query_params={"operation": "update"},
        )

    async def delete(self, realm_id: str, entity: str, payload: dict[str, Any]) -> QBOResult:
        return await self.request(
            realm_id,
            endpoint=entity.lower(),
            method="POST",
            body=payload,
            query_params={"operation": "delete"},
        )

    async def batch(self, realm_id: str, items: list[dict[str, Any]]) -> QBOResult:
        requests = []
        for index, item in enumerate(items, start=1):
            requests.append({"bId": str(index), **item} if "bId" not in item else item)
        return await self.request(
            realm_id,
            endpoint="batch",
            method="POST",
            body={"BatchItemRequest": requests},
        )

    async def get_report(
        self,
        realm_id: str,
        report: str,
        params: Optional[dict[str, Any]] = None,
    ) -> QBOResult:
        report_name = resolve_report_name(report)
        return await self.request(
            realm_id,
            endpoint=f"reports/{report_name}",
            query_params=params,
        )

    async def download_pdf(self, realm_id: str, entity: str, entity_id: str) -> QBOResult:
        return await self.request(
            realm_id,
            endpoint=f"{entity.lower()}/{entity_id}/pdf",
            accept="application/pdf",
        )

    async def _send_once(
        self,
        client: httpx.AsyncClient,
        realm_id: str,
        *,
        method: str,
        url: str,
        params: dict[str, Any],
        body: Any,
        accept: str,
        retry_on_unauthorized: bool,
    ) -> QBOResult:
        token_or_failure = await self._resolve_token(realm_id)
        if isinstance(token_or_failure, QBOResult):
            return token_or_failure

        headers = {
            "Authorization": f"Bearer {token_or_failure.access_token}",
            "Accept": accept,
        }
        if body is not None:
            headers["Content-Type"] = "application/json"

        response = await client.request(
            method,
            url,
            params=params,
            json=body,
            headers=headers,
        )

        if response.status_code == 401 and retry_on_unauthorized:
            self.logger.warning(
                "qbo_unauthorized",
                extra={"user_id": self.user_id, "realm_id": realm_id},
            )
            self.tokens.invalidate(self.user_id, realm_id)
            raise TokenRejectedError(response)
        if should_retry(response):
            raise RetryableHTTPException(response, parse_retry_after(response))
        return self._build_result(response)

    async def _resolve_token(self, realm_id: str) -> Token | QBOResult:
        try:
            token = await self.tokens.get_token(self.user_id, realm_id)
        except AuthenticationRequiredError as exc:
            return QBOResult.failure(exc.code, str(exc))
        except TokenServiceError as exc:
            return QBOResult.failure(exc.code, "Unable to load QuickBooks credentials", detail=str(exc))

        if not isinstance(token, Token):
            return QBOResult.failure(
                "TOKEN_NOT_FOUND",
                f"No QuickBooks connection for realm {realm_id}",
            )
        if self.tokens.is_token_expired(token):
            return QBOResult.failure(
                "TOKEN_EXPIRED",
                "QuickBooks access token has expired; refresh the connection",
            )
        return token

    def _build_result(self, response: httpx.Response) -> QBOResult:
        content_type = self._content_type(response)
        if response.status_code >= 400:
            return QBOResult(
                success=False,
                error=self._unwrap_error(response),
                status_code=response.status_code,
                content_type=content_type,
            )

        if response.status_code == 204 or not response.content:
            return QBOResult(success=True, data=None, status_code=response.status_code)

        if content_type == "application/json" or content_type.endswith("+json"):
            try:
                data: Any = response.json()
            except ValueError as exc:
                return QBOResult.failure(
                    "MALFORMED_RESPONSE",
                    "QuickBooks returned an unparsable JSON body",
                    detail=str(exc),
                    status_code=response.status_code,
                )
        elif content_type == "application/pdf":
            data = response.content
        elif content_type.startswith("text/"):
            data = response.text
        else:
            return QBOResult.failure(
                "MALFORMED_RESPONSE",
                f"Unexpected content type: {content_type or 'missing'}",
                status_code=response.status_code,
            )

        return QBOResult(
            success=True,
            data=data,
            status_code=response.status_code,
            content_type=content_type,
        )

    def _unwrap_error(self, response: httpx.Response) -> QBOError:
        fallback = QBOError(
            code=f"HTTP_{response.status_code}",
            message=response.reason_phrase or "QuickBooks API error",
            detail=response.text[:2000] or None,
        )
        try:
            payload = response.json()
        except ValueError:
            return fallback
        if not isinstance(payload, dict):
            return fallback

        fault = payload.get("Fault") or payload.get("fault")
        if not isinstance(fault, dict):
            return fallback
        errors = fault.get("Error") or fault.get("error") or []
        if not errors or not isinstance(errors[0], dict):
            return fallback
        first = errors[0]
        return QBOError(
            code=str(first.get("code") or fault.get("type") or fallback.code),
            message=str(first.get("Message") or first.get("message") or fallback.message),
            detail=first.get("Detail") or first.get("detail"),
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        if retry_state.outcome is not None and retry_state.outcome.failed:
            if isinstance(retry_state.outcome.exception(), TokenRejectedError):
                return 0.0
        return calculate_wait(self.settings, retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        status_code = None
        if isinstance(exc, (RetryableHTTPException, TokenRejectedError)):
            status_code = exc.response.status_code
        self.logger.warning(
            "qbo_request_retry",
            extra={
                "user_id": self.user_id,
                "attempt": retry_state.attempt_number,
                "status": status_code,
                "delay_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
                "error": type(exc).__name__ if exc else None,
            },
        )

    def _build_url(self, realm_id: str, endpoint: str) -> str:
        base = self.SANDBOX_API_BASE if self.settings.environment == "sandbox" else self.PROD_API_BASE
        return f"{base}/v3/company/{realm_id}/{endpoint.lstrip('/')}"

    @staticmethod
    def _content_type(response: httpx.Response) -> str:
        return response.headers.get("Content-Type", "").split(";")[0].strip().lower()
