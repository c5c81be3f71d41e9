"""Worker wiring for the ambiguous-operation reconciliation sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict

from loguru import logger

from carsa_api.core.settings import settings
from carsa_api.services.ledger import LedgerClient, get_ledger_client
from carsa_api.services.orchestration import ReconciliationService, build_orchestrators
from carsa_api.services.persistence import SessionFactory

LedgerFactory = Callable[[], LedgerClient]


class ReconciliationWorker:
    """Periodically settles ambiguous keys and resolves stalled ledger submissions."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        ledger_factory: LedgerFactory | None = None,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger_factory = ledger_factory or get_ledger_client
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self._batch_size = batch_size or settings.reconciliation_batch_size
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None
        self.last_error_at: datetime | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Reconciliation worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Reconciliation worker stopped")

    async def run_once(self) -> Dict[str, int]:
        """Run one sweep and return its counters."""

        orchestrators = build_orchestrators(self._session_factory, self._ledger_factory())
        service = ReconciliationService(orchestrators, batch_size=self._batch_size)
        try:
            summary = await service.sweep()
        except Exception as exc:
            self.last_error = str(exc)
            self.last_error_at = datetime.now(timezone.utc)
            raise
        self.last_run_at = datetime.now(timezone.utc)
        self.last_error = None
        return summary.as_dict()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - loop must survive a bad sweep
                logger.exception("Reconciliation iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
