"""
Daily job trigger.

Meant to be called once a day by cron (or any scheduler):

    python -m flowassist.jobs.scheduler            # reminders for tomorrow
    python -m flowassist.jobs.scheduler --date 2026-03-01
"""

import argparse
import logging

from .queue import QUEUE_SCHEDULED, enqueue_job
from .tasks import task_agenda_reminders

logger = logging.getLogger(__name__)


def run_daily(run_date: str = None):
    result = enqueue_job(task_agenda_reminders, run_date, queue_name=QUEUE_SCHEDULED, timeout=600)
    logger.info(f"Daily reminders job: {result.get('status')} ({result.get('job_id')})")
    return result


def main():
    parser = argparse.ArgumentParser(description="Enqueue the daily FlowAssist jobs")
    parser.add_argument("--date", default=None, help="Run as if today were this ISO date")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    run_daily(args.date)


if __name__ == "__main__":
    main()
