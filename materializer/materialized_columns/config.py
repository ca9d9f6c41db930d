from django.conf import settings

import pydantic


def _default(name: str):
    return pydantic.Field(default_factory=lambda: getattr(settings, name))


class MaterializationConfig(pydantic.BaseModel):
    """Options of a materialization cycle. Defaults come from the ``MATERIALIZE_COLUMNS_*`` settings."""

    model_config = pydantic.ConfigDict(frozen=True)

    trailing_window_days: int = _default("MATERIALIZE_COLUMNS_ANALYSIS_PERIOD_DAYS")
    top_n: int = _default("MATERIALIZE_COLUMNS_MAX_AT_ONCE")
    chunk_size: int = _default("MATERIALIZE_COLUMNS_BACKFILL_CHUNK_SIZE")
    max_retries: int = _default("MATERIALIZE_COLUMNS_BACKFILL_MAX_RETRIES")
    min_usage_threshold: int = _default("MATERIALIZE_COLUMNS_MIN_USAGE")
    min_query_time: int = _default("MATERIALIZE_COLUMNS_MINIMUM_QUERY_TIME")
    backfill_period_days: int = _default("MATERIALIZE_COLUMNS_BACKFILL_PERIOD_DAYS")
    backfill_concurrency: int = _default("MATERIALIZE_COLUMNS_BACKFILL_CONCURRENCY")
    retry_delay: float = _default("MATERIALIZE_COLUMNS_BACKFILL_RETRY_DELAY")
    default_saving_ratio: float = _default("MATERIALIZE_COLUMNS_DEFAULT_SAVING_RATIO")
    min_comparison_samples: int = _default("MATERIALIZE_COLUMNS_MIN_COMPARISON_SAMPLES")
    create_minmax_index: bool = _default("MATERIALIZE_COLUMNS_CREATE_MINMAX_INDEX")

    @pydantic.field_validator("trailing_window_days", "chunk_size", "backfill_concurrency")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @pydantic.field_validator(
        "top_n", "max_retries", "min_usage_threshold", "min_query_time", "backfill_period_days", "min_comparison_samples"
    )
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @pydantic.field_validator("retry_delay")
    @classmethod
    def validate_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @pydantic.field_validator("default_saving_ratio")
    @classmethod
    def validate_ratio(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("must be between 0 and 1")
        return value
