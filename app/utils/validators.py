from __future__ import annotations

import re
from typing import Optional

from fastapi import HTTPException, status


_ENTITY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")


def normalize_entity(value: str) -> str:
    if not _ENTITY_PATTERN.match(value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid entity name",
        )
    return value


def normalize_start_position(value: Optional[int]) -> int:
    if value is None or value < 1:
        return 1
    return value


def normalize_max_results(value: Optional[int], *, default: int = 100, limit: int = 1000) -> int:
    if value is None:
        return default
    if value < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="maxresults must be >= 1",
        )
    if value > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"maxresults cannot exceed {limit}",
        )
    return value


def build_select_statement(
    entity: str,
    *,
    where: Optional[str] = None,
    start_position: int = 1,
    max_results: int = 100,
) -> str:
    """Compose a QuickBooks query language SELECT for a single entity."""
    statement = f"SELECT * FROM {normalize_entity(entity)}"
    if where and where.strip():
        statement += f" WHERE {where.strip()}"
    return f"{statement} STARTPOSITION {start_position} MAXRESULTS {max_results}"
