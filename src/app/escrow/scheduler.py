"""Background sweeps for escrow deadlines and chain retries.

Defines async task functions that walk every active tenant, bind its
TenantContext, and call the lifecycle service. Tasks are decoupled from
the loop that schedules them so tests can run them directly.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from src.app.core.monitoring import active_tenants, scheduler_sweep_duration_seconds
from src.app.core.tenant import TenantContext, tenant_scope
from src.app.escrow.service import EscrowLifecycleService

logger = structlog.get_logger(__name__)

TenantLister = Callable[[], Awaitable[list[TenantContext]]]


async def setup_escrow_scheduler(
    service: EscrowLifecycleService,
    tenant_lister: TenantLister,
) -> dict:
    """Configure the escrow sweep tasks.

    Task definitions:
    1. expire_overdue: cancel/refund investments past expiry or review deadline
    2. retry_pending_transactions: resubmit missing chain transactions
    3. unwind_cancelled_deals: refund investments left open on cancelled deals

    Each task:
    - Isolates tenants (one tenant's failure doesn't stop the sweep)
    - Logs per-tenant results via structlog
    - Returns the total count across tenants

    Args:
        service: EscrowLifecycleService instance.
        tenant_lister: Async callable returning active tenant contexts.

    Returns:
        Dict mapping task name to async callable.
    """

    async def _sweep(task: str, operation: Callable[[str], Awaitable[int]]) -> int:
        started = time.perf_counter()
        try:
            tenants = await tenant_lister()
        except Exception:
            logger.warning("scheduler.tenant_listing_failed", task=task, exc_info=True)
            return 0
        active_tenants.set(len(tenants))

        total = 0
        for ctx in tenants:
            try:
                with tenant_scope(ctx):
                    count = await operation(ctx.tenant_id)
            except Exception:
                logger.warning(
                    "scheduler.tenant_sweep_failed",
                    task=task,
                    tenant_id=ctx.tenant_id,
                    exc_info=True,
                )
                continue
            if count:
                logger.info("scheduler.tenant_swept", task=task, tenant_id=ctx.tenant_id, count=count)
            total += count

        scheduler_sweep_duration_seconds.labels(task=task).observe(time.perf_counter() - started)
        logger.info("scheduler.sweep_completed", task=task, tenants=len(tenants), count=total)
        return total

    async def expire_overdue_task() -> int:
        return await _sweep("expire_overdue", service.expire_overdue)

    async def retry_pending_transactions_task() -> int:
        return await _sweep("retry_pending_transactions", service.retry_pending_transactions)

    async def unwind_cancelled_deals_task() -> int:
        return await _sweep("unwind_cancelled_deals", service.unwind_cancelled_deals)

    return {
        "expire_overdue": expire_overdue_task,
        "retry_pending_transactions": retry_pending_transactions_task,
        "unwind_cancelled_deals": unwind_cancelled_deals_task,
    }


async def start_scheduler_background(tasks: dict, app_state, interval: int) -> None:
    """Start each task as an asyncio loop running every ``interval`` seconds.

    Task references are stored on ``app_state.escrow_scheduler_tasks`` so
    the lifespan can cancel them on shutdown.
    """
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():

        async def _loop(fn=task_fn, name=task_name):
            while True:
                try:
                    await asyncio.sleep(interval)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        background_tasks.append(asyncio.create_task(_loop(), name=f"escrow_scheduler_{task_name}"))

    app_state.escrow_scheduler_tasks = background_tasks
    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
        interval=interval,
    )


async def stop_scheduler_background(app_state) -> None:
    """Cancel the loops started by start_scheduler_background."""
    tasks: list[asyncio.Task] = getattr(app_state, "escrow_scheduler_tasks", [])
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    app_state.escrow_scheduler_tasks = []
