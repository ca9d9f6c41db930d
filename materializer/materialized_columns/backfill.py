"""
Backfilling of newly materialized columns.

Each ``BackfillJob`` walks the partitions that existed when its column was added, oldest first, a chunk at a time. The
cursor only moves once a chunk has been fully materialized, so a job interrupted at any point resumes at the first
chunk that wasn't confirmed done. Materializing a partition is idempotent: the column expression only depends on the
raw data, and an already running (or finished) mutation for a partition is reused instead of being enqueued again.
"""

import time
import itertools
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, TypeVar

import structlog
from django.db import close_old_connections

from materializer.clickhouse.database import AnalyticsDatabase
from materializer.clickhouse.mutations import ExponentialBackoff
from materializer.exceptions import BackfillChunkError
from materializer.materialized_columns.lease import CycleLease, abort_requested
from materializer.models import BackfillJob, BackfillJobState

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    iterator = iter(items)
    while chunk := list(itertools.islice(iterator, size)):
        yield chunk


@dataclass
class BackfillCoordinator:
    database: AnalyticsDatabase
    chunk_size: int = 1
    max_retries: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: ExponentialBackoff(30.0, max_delay=15 * 60))
    concurrency: int = 1
    lease: Optional[CycleLease] = None
    should_abort: Callable[[], bool] = abort_requested
    sleep: Callable[[float], None] = time.sleep

    def get_resumable_jobs(self) -> list[BackfillJob]:
        return list(
            BackfillJob.objects.filter(state__in=BackfillJob.RESUMABLE_STATES)
            .select_related("candidate")
            .order_by("created_at", "id")
        )

    def run(self, jobs: Optional[Sequence[BackfillJob]] = None) -> dict[tuple[str, str], BackfillJobState]:
        """
        Runs the given jobs (or every running/paused job) to completion, failure or abort. Jobs are independent of each
        other: the failure of one never affects the others.
        """
        if jobs is None:
            jobs = self.get_resumable_jobs()

        if not jobs:
            return {}

        logger.info("Starting backfills.", count=len(jobs), concurrency=self.concurrency)

        if self.concurrency <= 1 or len(jobs) == 1:
            return {job.key: self.run_job(job) for job in jobs}

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {job.key: executor.submit(self._run_job_in_thread, job) for job in jobs}
            return {key: future.result() for key, future in futures.items()}

    def _run_job_in_thread(self, job: BackfillJob) -> BackfillJobState:
        try:
            return self.run_job(job)
        finally:
            close_old_connections()

    def _interrupted(self) -> Optional[str]:
        if self.lease is not None and not self.lease.refresh():
            return "lost the cycle lease"
        if self.should_abort():
            return "aborted by operator"
        return None

    def get_pending_partitions(self, job: BackfillJob) -> list[str]:
        partitions = sorted(self.database.get_partitions(job.table))
        return [partition for partition in partitions if job.includes_partition(partition)]

    def run_job(self, job: BackfillJob) -> BackfillJobState:
        log = logger.bind(table=job.table, column=job.column_name, cursor=job.cursor)

        try:
            if job.state != BackfillJobState.RUNNING:
                job.start()

            partitions = self.get_pending_partitions(job)
            log.info("Backfilling materialized column.", partitions=len(partitions))

            for chunk in chunked(partitions, self.chunk_size):
                while True:
                    if reason := self._interrupted():
                        log.warning("Pausing backfill.", reason=reason, cursor=job.cursor)
                        job.pause(reason)
                        return BackfillJobState.PAUSED

                    try:
                        self.database.materialize_column(job.table, job.column_name, chunk)
                    except BackfillChunkError as e:
                        job.attempts += 1
                        if job.attempts > self.max_retries:
                            log.error("Backfill failed after retries.", attempts=job.attempts, error=str(e), chunk=chunk)
                            job.fail(str(e))
                            return BackfillJobState.FAILED

                        delay = self.backoff(job.attempts)
                        log.warning(
                            "Backfill chunk failed, retrying.", attempts=job.attempts, delay=delay, error=str(e), chunk=chunk
                        )
                        job.pause(str(e))
                        self.sleep(delay)
                        job.start()
                    else:
                        job.advance(chunk[-1])
                        log.info("Backfilled chunk.", cursor=job.cursor)
                        break

            job.complete()
            log.info("Backfill completed.")
            return BackfillJobState.COMPLETED
        except Exception as e:
            log.exception("Backfill failed with an unrecoverable error.")
            job.fail(f"{type(e).__name__}: {e}", fail_candidate=True)
            return BackfillJobState.FAILED
