"""Periodic reconcile runs."""

import logging
from typing import Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from .config import (
    COMPANY_NAME,
    RECONCILE_CRON,
    RUN_DEADLINE_SECONDS,
    SLACK_BOT_TOKEN,
    SLACK_NOTIFY_CHANNEL,
)
from .errors import ReconcileInProgressError, RosterError
from .reconcile import CancellationToken, RunReport, reconcile_company

logger = logging.getLogger(__name__)


def alert(message: str, slack_client: WebClient | None = None) -> None:
    """Tell a human that a run could not happen."""
    logger.error(message)
    if slack_client is None:
        if not SLACK_BOT_TOKEN:
            return
        slack_client = WebClient(token=SLACK_BOT_TOKEN)
    if not SLACK_NOTIFY_CHANNEL:
        return
    try:
        slack_client.chat_postMessage(channel=SLACK_NOTIFY_CHANNEL, text=f":rotating_light: {message}")
    except SlackApiError as e:
        logger.error(f"Failed to post alert: {e}")


def reconcile_job(
    run: Callable[..., RunReport] = reconcile_company,
    deadline_seconds: int = RUN_DEADLINE_SECONDS,
    slack_client: WebClient | None = None,
) -> RunReport | None:
    """One scheduled pass. Never raises, so the scheduler keeps running."""
    token = CancellationToken(deadline_seconds)
    try:
        return run(token=token)
    except ReconcileInProgressError as e:
        logger.warning(f"Skipping scheduled run: {e}")
    except RosterError as e:
        alert(f"Reconcile for {COMPANY_NAME} aborted, roster is invalid: {e}", slack_client)
    except Exception as e:
        logger.exception("Scheduled reconcile failed")
        alert(f"Reconcile for {COMPANY_NAME} failed: {e}", slack_client)
    return None


def create_scheduler(
    job: Callable[[], object] = reconcile_job,
    cron: str = RECONCILE_CRON,
) -> BlockingScheduler:
    """Create the scheduler with the reconcile job.

    Args:
        job: Callable run on every trigger.
        cron: Standard five-field crontab expression.
    """
    scheduler = BlockingScheduler(
        job_defaults={
            "coalesce": True,  # Combine missed runs
            "max_instances": 1,  # Never overlap passes
            "misfire_grace_time": 300,
        }
    )
    scheduler.add_job(
        job,
        CronTrigger.from_crontab(cron),
        id="reconcile",
        name="Reconcile roster",
        replace_existing=True,
    )
    logger.info(f"Reconcile scheduled with cron {cron!r}")
    return scheduler


def run_scheduler(run_now: bool = False) -> None:
    """Block running scheduled reconcile passes until interrupted."""
    scheduler = create_scheduler()
    if run_now:
        reconcile_job()
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
