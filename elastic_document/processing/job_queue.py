from __future__ import annotations

import argparse
import logging
from datetime import timedelta
from typing import Optional

from redis import Redis
from rq import Queue, Worker

from .claims import ClaimCoordinator
from .config import PipelineConfig, build_repository
from .models import new_id

logger = logging.getLogger(__name__)

REAPER_JOB_PREFIX = "claim-reaper"
DEFAULT_REAPER_INTERVAL_SECONDS = 300


def reaper_job_id() -> str:
    return f"{REAPER_JOB_PREFIX}-{new_id()}"


def run_claim_reaper(config: PipelineConfig, reschedule_seconds: Optional[int] = None) -> int:
    """
    RQ task entrypoint. Resets claims that outlived the TTL and, when asked,
    schedules its own next run.
    """
    repo = build_repository(config)
    reaped = ClaimCoordinator(repo, claim_ttl_seconds=config.claim_ttl_seconds).reap_stale_claims()
    logger.info("Claim reaper finished, %s claim(s) reset", reaped)
    if reschedule_seconds:
        RQJobQueue(config.redis_url).schedule_claim_reaper(config, reschedule_seconds)
    return reaped


class RQJobQueue:
    """
    Redis-backed queue for background maintenance using RQ. Workers are
    started by calling `work()` in a dedicated process; the scheduler must be
    enabled there for delayed runs.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", queue_name: str = "maintenance"):
        self.redis = Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)

    def enqueue_claim_reaper(self, config: PipelineConfig, reschedule_seconds: Optional[int] = None):
        """
        Run the reaper as soon as a worker is free. With `reschedule_seconds`
        every run queues the next one.
        """
        return self.queue.enqueue(run_claim_reaper, config, reschedule_seconds, job_id=reaper_job_id(), retry=None)

    def schedule_claim_reaper(self, config: PipelineConfig, every_seconds: int):
        """
        Run the reaper after `every_seconds`, then keep rescheduling it at the
        same interval. Each run gets its own RQ id so the running job's record
        is never overwritten by its successor.
        """
        return self.queue.enqueue_in(
            timedelta(seconds=every_seconds),
            run_claim_reaper,
            config,
            every_seconds,
            job_id=reaper_job_id(),
        )

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run the maintenance worker that resets stale job claims.")
    parser.add_argument(
        "--every",
        type=int,
        default=DEFAULT_REAPER_INTERVAL_SECONDS,
        help="Seconds between claim reaper runs",
    )
    parser.add_argument("--no-reaper", action="store_true", help="Only run the worker, do not queue a reaper run")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    config = PipelineConfig.from_env().validate()
    job_queue = RQJobQueue(config.redis_url)
    if not args.no_reaper:
        job_queue.enqueue_claim_reaper(config, args.every)
        logger.info("Queued claim reaper, repeating every %ss", args.every)
    job_queue.work()


if __name__ == "__main__":
    main()
