"""Periodic sweep over pending domain bindings.

Tenants who never come back to press "check now" still get activated once
their DNS propagates. The sweep calls the orchestrator's verification
entry point for each PENDING binding, exactly as an on-demand check would.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from domainkeeper.domains.orchestrator import ProvisioningOrchestrator

logger = structlog.get_logger()


async def run_sweep_loop(
    orchestrator: ProvisioningOrchestrator,
    interval: float | None = None,
) -> None:
    """Run sweeps in a loop until cancelled.

    Args:
        orchestrator: Orchestrator whose pending bindings are verified.
        interval: Seconds between sweeps. If None, uses the config value.
    """
    if interval is None:
        interval = orchestrator.config.orchestrator.sweep_interval

    logger.info("Starting sweep loop", interval=interval)

    while True:
        try:
            summary = await orchestrator.sweep_pending()
            if summary["checked"] > 0:
                logger.info("Sweep completed", **summary)
        except Exception as e:
            logger.error("Sweep error", error=str(e))

        await asyncio.sleep(interval)


def start_sweep_task(
    orchestrator: ProvisioningOrchestrator,
    interval: float | None = None,
) -> asyncio.Task[None]:
    """Start the sweep loop in the background.

    Returns:
        asyncio Task that can be cancelled.
    """
    return asyncio.create_task(run_sweep_loop(orchestrator, interval))
