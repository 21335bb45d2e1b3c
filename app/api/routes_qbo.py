from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import ValidationError

from app.api.deps import get_qbo_client
from app.core import logging as logging_utils
from app.schemas.qbo import BatchRequest, QBOProxyResponse, QBOResult, ReportQuery
from app.services.qbo_client import QuickBooksClient, UnknownReportError
from app.utils.validators import build_select_statement, normalize_max_results, normalize_start_position


router = APIRouter(prefix="/qbo/{realm_id}", tags=["qbo"])
logger = logging.getLogger("app.api.qbo")

_CLIENT_SIDE_FAILURES = {
    "AUTH_REQUIRED": status.HTTP_401_UNAUTHORIZED,
    "TOKEN_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "TOKEN_EXPIRED": status.HTTP_409_CONFLICT,
}


@router.get("/companyinfo", response_model=QBOProxyResponse)
async def get_company_info(
    realm_id: str,
    client: QuickBooksClient = Depends(get_qbo_client),
) -> QBOProxyResponse:
    logging_utils.set_request_context(realm_id=realm_id)
    result = await client.get_company_info(realm_id)
    return _proxy_response(client, realm_id, result, event="qbo_companyinfo")


@router.get("/query", response_model=QBOProxyResponse)
async def run_query(
    realm_id: str,
    entity: str = Query(min_length=1, max_length=64),
    where: Optional[str] = Query(default=None, max_length=2000),
    startposition: Optional[int] = Query(default=None),
    maxresults: Optional[int] = Query(default=None),
    client: QuickBooksClient = Depends(get_qbo_client),
) -> QBOProxyResponse:
    logging_utils.set_request_context(realm_id=realm_id)
    statement = build_select_statement(
        entity,
        where=where,
        start_position=normalize_start_position(startposition),
        max_results=normalize_max_results(maxresults),
    )
    result = await client.query(realm_id, statement)
    return _proxy_response(client, realm_id, result, event="qbo_query")


@router.get("/reports/{report_type}", response_model=QBOProxyResponse)
async def get_report(
    realm_id: str,
    report_type: str,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    date_macro: Optional[str] = Query(default=None),
    accounting_method: Optional[str] = Query(default=None),
    summarize_column_by: Optional[str] = Query(default=None),
    client: QuickBooksClient = Depends(get_qbo_client),
) -> QBOProxyResponse:
    logging_utils.set_request_context(realm_id=realm_id)
    try:
        report_query = ReportQuery(
            start_date=start_date,
            end_date=end_date,
            date_macro=date_macro,
            accounting_method=accounting_method,
            summarize_column_by=summarize_column_by,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=[error["msg"] for error in exc.errors()],
        ) from exc

    try:
        result = await client.get_report(realm_id, report_type, report_query.to_params())
    except UnknownReportError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return _proxy_response(client, realm_id, result, event="qbo_report")


@router.get("/{entity}/{entity_id}/pdf")
async def download_pdf(
    realm_id: str,
    entity: str,
    entity_id: str,
    client: QuickBooksClient = Depends(get_qbo_client),
) -> Response:
    logging_utils.set_request_context(realm_id=realm_id)
    result = await client.download_pdf(realm_id, entity, entity_id)
    _raise_for_failure(result, realm_id, event="qbo_pdf")
    if not isinstance(result.data, bytes):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="QuickBooks did not return a PDF document",
        )
    return Response(
        content=result.data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{entity.lower()}-{entity_id}.pdf"'},
    )


@router.post("/batch", response_model=QBOProxyResponse)
async def run_batch(
    realm_id: str,
    payload: BatchRequest,
    client: QuickBooksClient = Depends(get_qbo_client),
) -> QBOProxyResponse:
    logging_utils.set_request_context(realm_id=realm_id)
    result = await client.batch(realm_id, payload.items)
    return _proxy_response(client, realm_id, result, event="qbo_batch")


def _proxy_response(
    client: QuickBooksClient,
    realm_id: str,
    result: QBOResult,
    *,
    event: str,
) -> QBOProxyResponse:
    _raise_for_failure(result, realm_id, event=event)
    logger.info(
        f"{event}_success",
        extra={
            "user_id": client.user_id,
            "realm_id": realm_id,
            "attempts": result.attempts,
            "latency_ms": result.latency_ms,
        },
    )
    return QBOProxyResponse(
        user_id=client.user_id,
        realm_id=realm_id,
        environment=client.settings.environment,
        fetched_at=datetime.now(timezone.utc),
        latency_ms=result.latency_ms,
        attempts=result.attempts,
        data=result.data,
    )


def _raise_for_failure(result: QBOResult, realm_id: str, *, event: str) -> None:
    if result.success:
        return
    error = result.error
    code = error.code if error else "UNKNOWN"
    logger.error(
        f"{event}_error",
        extra={
            "realm_id": realm_id,
            "error_code": code,
            "qbo_status_code": result.status_code,
        },
    )
    status_code = _CLIENT_SIDE_FAILURES.get(code, status.HTTP_502_BAD_GATEWAY)
    if result.status_code in (status.HTTP_400_BAD_REQUEST, status.HTTP_404_NOT_FOUND):
        status_code = result.status_code
    raise HTTPException(
        status_code=status_code,
        detail=error.model_dump() if error else "QuickBooks API error",
    )
