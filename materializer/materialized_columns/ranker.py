"""
Ranking of the properties observed in the query log.

The benefit of materializing a property is estimated as ``usage count x average cost saved per query``. How much a
query saves is a replaceable heuristic (see ``CostModel``): by default it is derived from the difference between
queries on the same table that read materialized columns and queries that extract properties from the raw column,
falling back to a fixed ratio of the observed query time when there is not enough data to compare.
"""

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional, Protocol

from materializer.clickhouse.columns import PropertyName
from materializer.materialized_columns.extractor import ExtractedQuery

PropertyKey = tuple[str, PropertyName]


@dataclass
class PropertyUsage:
    table: str
    property_name: PropertyName
    count: int = 0
    total_duration_ms: float = 0.0
    total_read_bytes: int = 0

    @property
    def key(self) -> PropertyKey:
        return (self.table, self.property_name)

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.count if self.count else 0.0

    @property
    def avg_read_bytes(self) -> float:
        return self.total_read_bytes / self.count if self.count else 0.0


@dataclass
class TableBaseline:
    """Query times on a table, split by whether queries read materialized columns (hits) or raw JSON (misses.)"""

    table: str
    hit_count: int = 0
    hit_duration_ms: float = 0.0
    miss_count: int = 0
    miss_duration_ms: float = 0.0

    @property
    def avg_hit_duration_ms(self) -> float:
        return self.hit_duration_ms / self.hit_count if self.hit_count else 0.0

    @property
    def avg_miss_duration_ms(self) -> float:
        return self.miss_duration_ms / self.miss_count if self.miss_count else 0.0


@dataclass
class UsageAggregator:
    usage: dict[PropertyKey, PropertyUsage] = field(default_factory=dict)
    baselines: dict[str, TableBaseline] = field(default_factory=dict)

    def add(self, extracted: ExtractedQuery) -> None:
        for property_name in extracted.properties:
            key = (extracted.table, property_name)
            usage = self.usage.get(key)
            if usage is None:
                usage = self.usage[key] = PropertyUsage(extracted.table, property_name)
            # every property read by a query is attributed the full cost of that query
            usage.count += 1
            usage.total_duration_ms += extracted.duration_ms
            usage.total_read_bytes += extracted.read_bytes

        if not extracted.properties and not extracted.is_materialized_hit:
            return

        baseline = self.baselines.get(extracted.table)
        if baseline is None:
            baseline = self.baselines[extracted.table] = TableBaseline(extracted.table)
        if extracted.properties:
            baseline.miss_count += 1
            baseline.miss_duration_ms += extracted.duration_ms
        else:
            baseline.hit_count += 1
            baseline.hit_duration_ms += extracted.duration_ms

    def extend(self, extracted: Iterable[ExtractedQuery]) -> "UsageAggregator":
        for item in extracted:
            self.add(item)
        return self


class CostModel(Protocol):
    def estimate_saved_ms(self, usage: PropertyUsage, baseline: Optional[TableBaseline]) -> float: ...


@dataclass(frozen=True)
class ObservedCostModel:
    default_saving_ratio: float = 0.5
    min_comparison_samples: int = 20

    def saving_ratio(self, baseline: Optional[TableBaseline]) -> float:
        if (
            baseline is None
            or baseline.hit_count < self.min_comparison_samples
            or baseline.miss_count < self.min_comparison_samples
            or baseline.avg_miss_duration_ms <= 0
        ):
            return self.default_saving_ratio

        ratio = 1.0 - baseline.avg_hit_duration_ms / baseline.avg_miss_duration_ms
        return min(max(ratio, 0.0), 1.0)

    def estimate_saved_ms(self, usage: PropertyUsage, baseline: Optional[TableBaseline]) -> float:
        return usage.avg_duration_ms * self.saving_ratio(baseline)


@dataclass(frozen=True)
class Suggestion:
    table: str
    property_name: PropertyName
    score: float
    usage_count: int

    @property
    def key(self) -> PropertyKey:
        return (self.table, self.property_name)


def score(usage: PropertyUsage, baseline: Optional[TableBaseline], cost_model: CostModel) -> float:
    return usage.count * cost_model.estimate_saved_ms(usage, baseline)


def rank_candidates(
    usage: Iterable[PropertyUsage],
    baselines: Mapping[str, TableBaseline],
    existing: Collection[PropertyKey],
    top_n: int,
    min_usage_threshold: int,
    cost_model: CostModel,
) -> list[Suggestion]:
    """
    Returns at most ``top_n`` properties worth materializing, best first.

    Properties in ``existing`` (already materialized or being materialized) are never returned. Ties are broken by
    usage count, and then by name, so the same input always produces the same selection.
    """
    suggestions = []
    for item in usage:
        if item.count < min_usage_threshold or item.key in existing:
            continue

        benefit = score(item, baselines.get(item.table), cost_model)
        if benefit <= 0:
            continue

        suggestions.append(Suggestion(item.table, item.property_name, benefit, item.count))

    suggestions.sort(key=lambda s: (-s.score, -s.usage_count, s.property_name, s.table))
    return suggestions[: max(top_n, 0)]
