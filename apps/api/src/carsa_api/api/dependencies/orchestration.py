"""Dependencies handing request handlers the shared orchestration wiring."""

from __future__ import annotations

from carsa_api.db.session import async_session
from carsa_api.services.ledger import get_ledger_client
from carsa_api.services.orchestration import Orchestrators, build_orchestrators


def get_orchestrators() -> Orchestrators:
    return build_orchestrators(async_session, get_ledger_client())
