from materializer.models.backfill_job import BackfillJob, BackfillJobState
from materializer.models.materialization_candidate import MaterializationCandidate, MaterializationState

__all__ = [
    "BackfillJob",
    "BackfillJobState",
    "MaterializationCandidate",
    "MaterializationState",
]
