"""Translation of orchestration outcomes and request validation into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from carsa_api.domain.errors import ErrorKind, OrchestrationFailure


def failure_detail(failure: OrchestrationFailure) -> dict[str, str]:
    detail = {
        "error": failure.kind.value,
        "message": failure.message,
        "idempotencyKey": failure.idempotency_key,
    }
    if failure.ledger_signature:
        detail["ledgerSignature"] = failure.ledger_signature
    return detail


def raise_for_failure(failure: OrchestrationFailure) -> None:
    raise HTTPException(status_code=failure.http_status, detail=failure_detail(failure))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed bodies as 400 validation errors."""

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": {
                "error": ErrorKind.VALIDATION.value,
                "message": "Request body failed validation",
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )
