"""Status lookups for keyed operations, for callers polling after a conflict."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from carsa_api.db.session import get_session
from carsa_api.models.idempotency import IdempotencyRecord


router = APIRouter(prefix="/operations", tags=["operations"])


class OperationStatusResponse(BaseModel):
    idempotencyKey: str
    operation: str
    status: str
    ambiguous: bool
    attempts: int
    ledgerSignature: str | None
    result: dict[str, Any] | None
    lastError: str | None
    createdAt: datetime | None
    completedAt: datetime | None


@router.get("/{idempotency_key}", response_model=OperationStatusResponse, summary="Keyed operation status")
async def get_operation_status(
    idempotency_key: str,
    db: AsyncSession = Depends(get_session),
) -> OperationStatusResponse:
    record = await db.get(IdempotencyRecord, idempotency_key)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Operation not found")
    return OperationStatusResponse(
        idempotencyKey=record.key,
        operation=record.operation.value,
        status=record.status.value,
        ambiguous=record.is_ambiguous,
        attempts=record.attempts,
        ledgerSignature=record.ledger_signature,
        result=record.result_ref,
        lastError=record.last_error,
        createdAt=record.created_at,
        completedAt=record.completed_at,
    )
