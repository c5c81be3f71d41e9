"""Run the ambiguous-operation reconciliation sweep once.

Intended usage: schedule via cron or run by hand after a persistence outage
to settle keys whose ledger effect was confirmed but never recorded.

Example:
    python tooling/scripts/run_reconciliation_sweep.py --batch-size 200
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute the reconciliation sweep once")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of records examined per phase in this sweep.",
    )
    return parser.parse_args()


async def _run(batch_size: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from carsa_api.core.settings import settings  # type: ignore import-position
    from carsa_api.db.session import async_session  # type: ignore import-position
    from carsa_api.workers import ReconciliationWorker  # type: ignore import-position

    worker = ReconciliationWorker(
        async_session,
        batch_size=batch_size or settings.reconciliation_batch_size,
    )
    return await worker.run_once()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.batch_size))
    logger.success("Reconciliation sweep completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
