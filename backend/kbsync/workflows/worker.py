"""
Temporal Worker — Runs the periodic change detection workflow.
"""

import asyncio

import structlog
from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

from kbsync.config import settings
from kbsync.container import build_container
from kbsync.workflows.scheduler import SyncActivities, SyncScanWorkflow

logger = structlog.get_logger()

SCAN_WORKFLOW_ID = "kb-sync-scan"


async def main():
    logger.info("Starting Temporal worker", host=settings.temporal_host)

    container = build_container(settings)
    await container.startup()
    activities = SyncActivities(container)

    client = await Client.connect(settings.temporal_host, namespace=settings.temporal_namespace)

    worker = Worker(
        client,
        task_queue=settings.temporal_task_queue,
        workflows=[SyncScanWorkflow],
        activities=[activities.detect_all, activities.recalculate_confidence],
    )

    try:
        await client.start_workflow(
            SyncScanWorkflow.run,
            args=[settings.check_interval_minutes, settings.scan_cycles_per_workflow],
            id=SCAN_WORKFLOW_ID,
            task_queue=settings.temporal_task_queue,
        )
        logger.info("Scan workflow started", workflow_id=SCAN_WORKFLOW_ID)
    except WorkflowAlreadyStartedError:
        logger.info("Scan workflow already running", workflow_id=SCAN_WORKFLOW_ID)

    logger.info("Worker running", task_queue=settings.temporal_task_queue)
    try:
        await worker.run()
    finally:
        await container.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
