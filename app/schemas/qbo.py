from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator


HttpMethod = Literal["GET", "POST", "PUT", "DELETE"]


class QBOError(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class QBOResult(BaseModel):
    """Uniform outcome of a QuickBooks API call; the client never raises past it."""

    success: bool
    data: Any = None
    error: Optional[QBOError] = None
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    attempts: int = 0
    latency_ms: float = 0.0

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        *,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
        latency_ms: float = 0.0,
    ) -> "QBOResult":
        return cls(
            success=False,
            error=QBOError(code=code, message=message, detail=detail),
            status_code=status_code,
            attempts=attempts,
            latency_ms=latency_ms,
        )


class QBOProxyResponse(BaseModel):
    user_id: str
    realm_id: str
    environment: str
    fetched_at: datetime
    latency_ms: float
    attempts: int
    data: Any


class ReportQuery(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    date_macro: Optional[str] = None
    accounting_method: Optional[Literal["Cash", "Accrual"]] = None
    summarize_column_by: Optional[str] = None

    @model_validator(mode="after")
    def validate_period(self) -> "ReportQuery":
        if self.date_macro and (self.start_date or self.end_date):
            raise ValueError("Provide either start_date/end_date or date_macro, not both")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.start_date:
            params["start_date"] = self.start_date.isoformat()
        if self.end_date:
            params["end_date"] = self.end_date.isoformat()
        if self.date_macro:
            params["date_macro"] = self.date_macro
        if self.accounting_method:
            params["accounting_method"] = self.accounting_method
        if self.summarize_column_by:
            params["summarize_column_by"] = self.summarize_column_by
        return params


class BatchRequest(BaseModel):
    items: list[dict[str, Any]] = Field(min_length=1, max_length=30)
