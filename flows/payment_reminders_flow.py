# ==== PREFECT PAYMENT REMINDERS FLOW ==== #

"""
Prefect flow for the daily payment reminder sweep in OrderDesk.

Runs process_all_reminders() once. The flow and its task are never
retried: a retry after a partial sweep could email the same customer
twice. Overlapping runs are just as unsafe, so the deployment is served
with a concurrency limit of one.
"""

import argparse
import asyncio
from typing import Any, Dict

from prefect import flow, get_run_logger, task

from app.observability.logging import init_logging
from app.services.reminder_scheduler import get_reminder_scheduler
from app.settings import settings
from app.storage.db import close_database, init_database, verify_schema_version


# ==== TASK DEFINITIONS ==== #


@task(retries=0)
async def send_due_reminders() -> Dict[str, Any]:
    """
    Send every reminder due today.

    Returns:
        Dict[str, Any]: ``{sent, failed, skipped}`` counts of the sweep
    """
    logger = get_run_logger()
    logger.info("Starting payment reminder sweep")

    summary = await get_reminder_scheduler().process_all_reminders()
    return summary.model_dump()


# ==== MAIN FLOW DEFINITION ==== #


@flow(name="payment-reminders", retries=0, log_prints=True)
async def payment_reminders_flow() -> Dict[str, Any]:
    """
    Daily payment reminder sweep.

    Verifies the database schema, sends due reminders and logs the outcome.

    Returns:
        Dict[str, Any]: ``{sent, failed, skipped}`` counts of the sweep
    """
    logger = get_run_logger()

    init_database()
    try:
        await verify_schema_version()
        summary = await send_due_reminders()
    finally:
        await close_database()

    logger.info(
        f"Payment reminders processed: sent={summary['sent']} "
        f"failed={summary['failed']} skipped={summary['skipped']}"
    )
    return summary


# ==== DEPLOYMENT ==== #


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Payment reminders flow")
    parser.add_argument("--run", action="store_true", help="Run the sweep once locally")
    args = parser.parse_args()

    init_logging(settings.LOG_LEVEL, settings.LOG_TO_FILES)

    if args.run:
        result = asyncio.run(payment_reminders_flow())
        print(f"Flow completed: {result}")
    else:
        payment_reminders_flow.serve(
            name=settings.PREFECT_REMINDER_DEPLOYMENT_NAME,
            cron=settings.PREFECT_REMINDER_SCHEDULE_CRON,
            tags=["reminders", "payments"],
            limit=1,
        )
