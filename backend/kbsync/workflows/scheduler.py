"""
Temporal Workflow — Periodic Change Detection
==============================================
``SyncScanWorkflow`` runs the ``detect_all`` activity every
``check_interval_minutes`` and continues-as-new after a bounded number of
cycles to keep workflow history small. Per-source due-ness is decided by the
engine, independently of the check interval.
"""

import asyncio
from datetime import timedelta
from typing import Optional

import structlog
from temporalio import activity, workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from kbsync.container import Container
    from kbsync.models import SyncState

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
class SyncActivities:
    """Activities bound to one composition root."""

    def __init__(self, container: Container):
        self.container = container

    @activity.defn(name="detect_all")
    async def detect_all(self) -> dict:
        if not self.container.settings.auto_sync_enabled:
            logger.info("Auto sync disabled, skipping scan")
            return {"skipped": True, "operations": 0}

        operations = await self.container.engine.detect_all()
        return {
            "skipped": False,
            "operations": len(operations),
            "failed": sum(1 for op in operations if op.state == SyncState.FAILED),
            "created": sum(op.items_created for op in operations),
            "updated": sum(op.items_updated for op in operations),
        }

    @activity.defn(name="recalculate_confidence")
    async def recalculate_confidence(self, organization_id: Optional[str] = None) -> dict:
        report = await self.container.recalculator.recalculate_pending(organization_id)
        return {
            "updated": len(report.updated),
            "skipped": len(report.skipped),
            "level_changes": report.level_changes,
        }


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------
@workflow.defn
class SyncScanWorkflow:
    """
    Durable scan loop.

    Each cycle:
    1. Run change detection over all due sources
    2. Sleep for the check interval
    """

    @workflow.run
    async def run(self, check_interval_minutes: int = 5, max_cycles: int = 288) -> None:
        retry_policy = RetryPolicy(
            initial_interval=timedelta(seconds=1),
            maximum_interval=timedelta(minutes=1),
            maximum_attempts=3,
        )

        for cycle in range(max_cycles):
            result = await workflow.execute_activity_method(
                SyncActivities.detect_all,
                start_to_close_timeout=timedelta(minutes=30),
                retry_policy=retry_policy,
            )
            workflow.logger.info("Scan cycle %d finished: %s", cycle + 1, result)
            await asyncio.sleep(timedelta(minutes=check_interval_minutes).total_seconds())

        workflow.continue_as_new(args=[check_interval_minutes, max_cycles])
