"""
RQ worker for the FlowAssist queues.

    flowassist-worker                      # notifications first, then scheduled
    flowassist-worker -q scheduled --burst
"""

import argparse
import logging

from redis import Redis
from rq import Worker

from ..config import get_settings
from ..db.session import init_db
from .queue import ALL_QUEUES

logger = logging.getLogger(__name__)


def start_worker(queues=None, burst: bool = False):
    queues = queues or ALL_QUEUES
    unknown = [q for q in queues if q not in ALL_QUEUES]
    if unknown:
        raise ValueError(f"Unknown queue(s): {', '.join(unknown)}")

    # tasks open their own sessions
    init_db()

    worker = Worker(queues, connection=Redis.from_url(get_settings().redis_url))
    logger.info(f"Worker listening on {queues} (burst={burst})")
    worker.work(burst=burst)


def run_worker_cli():
    parser = argparse.ArgumentParser(description="FlowAssist background worker")
    parser.add_argument("--queues", "-q", nargs="+", default=ALL_QUEUES, help="Queues to listen to, in priority order")
    parser.add_argument("--burst", "-b", action="store_true", help="Exit once the queues are empty")
    parser.add_argument("--log-level", "-l", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    start_worker(queues=args.queues, burst=args.burst)


if __name__ == "__main__":
    run_worker_cli()
