"""Observability endpoints for orchestration outcomes and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from carsa_api.api.dependencies.security import require_internal_api_key
from carsa_api.observability.orchestration import get_orchestration_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/orchestration",
    dependencies=[Depends(require_internal_api_key)],
    summary="Orchestration outcome snapshot",
)
async def get_orchestration_snapshot() -> dict[str, object]:
    return get_orchestration_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} counter",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_internal_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_orchestration_store().snapshot()
    lines: list[str] = []

    for operation, counts in sorted(snapshot.outcomes.items()):
        for outcome, value in sorted(counts.items()):
            lines.extend(
                _format_metric(
                    "carsa_orchestration_outcomes_total",
                    "Ledger-backed operation outcomes grouped by operation and result",
                    value,
                    labels={"operation": operation, "outcome": outcome},
                )
            )

    for operation, value in sorted(snapshot.ledger_submissions.items()):
        lines.extend(
            _format_metric(
                "carsa_ledger_submissions_total",
                "Ledger submissions attempted",
                value,
                labels={"operation": operation},
            )
        )

    for result, value in sorted(snapshot.reconciliation.items()):
        lines.extend(
            _format_metric(
                "carsa_reconciliation_total",
                "Reconciliation sweep results",
                value,
                labels={"result": result},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
