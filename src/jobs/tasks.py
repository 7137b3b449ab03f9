import asyncio

import structlog

from src.jobs.registry import PaymentJobRegistry

logger = structlog.get_logger()


async def run_maintenance_tasks(registry: PaymentJobRegistry, interval_seconds: float = 300):
    """Background task that drops failed/expired jobs past their retention window"""
    while True:
        try:
            await asyncio.sleep(interval_seconds)

            swept = await registry.sweep_expired()
            if swept > 0:
                logger.info("expired_jobs_swept", count=swept)

        except asyncio.CancelledError:
            logger.info("maintenance_tasks_stopped")
            raise
        except Exception as e:
            logger.error("maintenance_task_error", error=str(e))
            # Back off so a persistent failure does not spam the logs
            await asyncio.sleep(interval_seconds)
