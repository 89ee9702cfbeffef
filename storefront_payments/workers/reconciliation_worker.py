"""
Reconciliation background worker.

Runs the stale transaction sweep on a fixed interval.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import httpx
import structlog

from storefront_payments.config import get_settings
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.core.reconciliation import ReconciliationSweep
from storefront_payments.database.connection import close_db, init_db
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.exceptions import PersistenceError
from storefront_payments.integrations.gateway_client import GatewayClient
from storefront_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_sweep(http_client: httpx.AsyncClient, stale_after_seconds: Optional[int] = None) -> ReconciliationSweep:
    """Wire a sweep against the app database and the configured gateway."""
    settings = get_settings()
    store = TransactionStore()
    reconciler = CallbackReconciler(store, GatewayClient(http_client))
    return ReconciliationSweep(
        store,
        reconciler,
        config_resolver=settings.resolve_gateway_config,
        stale_after_seconds=stale_after_seconds or settings.sweep_stale_after_seconds,
    )


async def run_sweep(sweep: ReconciliationSweep) -> Optional[Dict[str, Any]]:
    """Run one sweep; a store outage is logged and the next run retries."""
    try:
        summary = await sweep.run()
    except PersistenceError as e:
        logger.error("sweep_execution_error", error=e.message)
        return None

    if summary["stuck_initiated"]:
        logger.warning(
            "sweep_manual_recovery_needed",
            transaction_ids=summary["stuck_initiated"],
        )
    return summary


async def start_reconciliation_worker(
    interval_seconds: Optional[float] = None,
    stale_after_seconds: Optional[int] = None,
    once: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings.sweep_interval_seconds)
        stale_after_seconds: Staleness cutoff (defaults to settings.sweep_stale_after_seconds)
        once: Run a single sweep and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.sweep_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    await init_db()

    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("reconciliation_worker_shutdown_signal_received")
        stop_event.set()

    async with httpx.AsyncClient() as http_client:
        sweep = build_sweep(http_client, stale_after_seconds)

        try:
            if once:
                await run_sweep(sweep)
                return

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, handle_signal)

            while not stop_event.is_set():
                await run_sweep(sweep)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await close_db()
            logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Stale transaction sweep worker")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    parser.add_argument(
        "--stale-after", type=int, default=None, help="Seconds before a transaction is stale"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(
        start_reconciliation_worker(
            interval_seconds=args.interval,
            stale_after_seconds=args.stale_after,
            once=args.once,
        )
    )


if __name__ == "__main__":
    main()
