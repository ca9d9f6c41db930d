from django.db import models


class MaterializationState(models.TextChoices):
    NOT_MATERIALIZED = "NOT_MATERIALIZED", "Not materialized"
    PENDING = "PENDING", "Pending"
    MATERIALIZED = "MATERIALIZED", "Materialized"
    FAILED = "FAILED", "Failed"


class MaterializationCandidate(models.Model):
    """
    A property (within the raw property column of ``table``) that was selected for materialization.

    Candidates move from NOT_MATERIALIZED to PENDING once their column has been added, and to MATERIALIZED once the
    backfill of that column completes. FAILED candidates are eligible for selection again on the next cycle.
    """

    # Properties in these states are never selected again
    ACTIVE_STATES = (MaterializationState.PENDING, MaterializationState.MATERIALIZED)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    table = models.CharField(max_length=200)
    property_name = models.CharField(max_length=400)
    column_name = models.CharField(max_length=255, null=True, blank=True)
    score = models.FloatField(default=0.0)
    usage_count = models.PositiveBigIntegerField(default=0)
    state = models.CharField(
        max_length=20,
        choices=MaterializationState.choices,
        default=MaterializationState.NOT_MATERIALIZED,
    )
    error_message = models.TextField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["table", "property_name"], name="unique_candidate_table_property"),
        ]
        indexes = [
            models.Index(fields=["table", "state"], name="materializer_cand_state_idx"),
        ]

    def mark_pending(self, column_name: str) -> None:
        self.state = MaterializationState.PENDING
        self.column_name = column_name
        self.error_message = None
        self.save(update_fields=["state", "column_name", "error_message", "updated_at"])

    def mark_materialized(self) -> None:
        self.state = MaterializationState.MATERIALIZED
        self.error_message = None
        self.save(update_fields=["state", "error_message", "updated_at"])

    def mark_failed(self, error: str) -> None:
        self.state = MaterializationState.FAILED
        self.error_message = error
        self.save(update_fields=["state", "error_message", "updated_at"])

    def __str__(self) -> str:
        return f"{self.table}.{self.property_name} ({self.state})"
