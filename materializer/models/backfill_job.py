from django.db import models, transaction
from django.utils.timezone import now

from materializer.models.materialization_candidate import MaterializationCandidate


class BackfillJobState(models.TextChoices):
    RUNNING = "RUNNING", "Running"
    PAUSED = "PAUSED", "Paused"
    COMPLETED = "COMPLETED", "Completed"
    FAILED = "FAILED", "Failed"


class BackfillJob(models.Model):
    """
    Progress of populating the materialized column of a candidate for the partitions that existed before the column
    was added.

    ``cursor`` is the id of the last partition known to be fully materialized. Partitions are processed in ascending
    order, so everything up to (and including) the cursor is done.
    """

    RESUMABLE_STATES = (BackfillJobState.RUNNING, BackfillJobState.PAUSED)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    candidate = models.OneToOneField(
        MaterializationCandidate,
        on_delete=models.CASCADE,
        related_name="backfill_job",
    )
    # Denormalized from the candidate
    table = models.CharField(max_length=200)
    column_name = models.CharField(max_length=255)
    state = models.CharField(
        max_length=20,
        choices=BackfillJobState.choices,
        default=BackfillJobState.RUNNING,
    )
    cursor = models.CharField(max_length=200, null=True, blank=True)
    partition_lower = models.CharField(max_length=200, null=True, blank=True)
    partition_upper = models.CharField(max_length=200, null=True, blank=True)
    # Consecutive failed attempts of the chunk currently being processed
    attempts = models.PositiveIntegerField(default=0)
    error_message = models.TextField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["state"], name="materializer_backfill_st_idx"),
        ]

    @property
    def key(self) -> tuple[str, str]:
        return (self.table, self.candidate.property_name)

    def includes_partition(self, partition: str) -> bool:
        if self.partition_lower is not None and partition < self.partition_lower:
            return False
        if self.partition_upper is not None and partition > self.partition_upper:
            return False
        return self.cursor is None or partition > self.cursor

    def start(self) -> None:
        self.state = BackfillJobState.RUNNING
        self.save(update_fields=["state", "updated_at"])

    def advance(self, cursor: str) -> None:
        self.cursor = cursor
        self.attempts = 0
        self.error_message = None
        self.save(update_fields=["cursor", "attempts", "error_message", "updated_at"])

    def pause(self, error: str | None = None) -> None:
        self.state = BackfillJobState.PAUSED
        self.error_message = error
        self.save(update_fields=["state", "attempts", "error_message", "updated_at"])

    def fail(self, error: str, fail_candidate: bool = False) -> None:
        with transaction.atomic():
            self.state = BackfillJobState.FAILED
            self.error_message = error
            self.save(update_fields=["state", "attempts", "error_message", "updated_at"])
            if fail_candidate:
                self.candidate.mark_failed(f"backfill failed: {error}")

    def complete(self) -> None:
        with transaction.atomic():
            self.state = BackfillJobState.COMPLETED
            self.completed_at = now()
            self.error_message = None
            self.save(update_fields=["state", "completed_at", "error_message", "updated_at"])
            self.candidate.mark_materialized()

    def __str__(self) -> str:
        return f"backfill of {self.table}.{self.column_name} ({self.state}, cursor={self.cursor})"
