"""
Dataset types for the movement pipeline.

Everything here is an immutable value produced by ml.dataprep:

  MovementFeatures         — one per valid MovementRecord
  EntityAggregateFeatures  — one per entity, replaced wholesale on rebuild
  ClassificationSample     — vector + true next location
  RegressionSample         — vector + true stay duration (days)
  ClusteringSample         — latest vector + full history per entity
  TrainingDataset          — the three sample collections + metadata
  EntityState              — latest inference state of one entity
"""

from dataclasses import dataclass, field
from datetime import datetime

from fleet.records import MovementType
from ml.features import FeatureVector


@dataclass(frozen=True)
class MovementFeatures:
    entity_id: str
    sequence: int  # 0-based position in the entity's chronological history
    from_location_id: str
    from_location_type: str
    to_location_id: str
    to_location_type: str
    region: str
    departure_time: datetime
    arrival_time: datetime
    idle_days: float
    movement_type: MovementType
    day_of_week: int  # Monday = 0
    month: int
    quarter: int
    is_warehouse: bool  # destination is a warehouse
    from_is_warehouse: bool
    is_seasonal: bool
    consecutive_same_type: int


@dataclass(frozen=True)
class EntityAggregateFeatures:
    entity_id: str
    total_movements: int
    avg_idle_days: float
    std_idle_days: float
    median_idle_days: float
    avg_idle_days_warehouse: float
    std_idle_days_warehouse: float
    avg_idle_days_offsite: float
    std_idle_days_offsite: float
    total_stay_days_warehouse: float
    total_stay_days_offsite: float
    most_common_from_location: str
    most_common_to_location: str
    most_common_warehouse: str | None
    region_frequency: dict[str, int]
    movements_per_month: float
    movement_type_distribution: dict[str, float]
    movement_consistency: float
    days_since_last_movement: float
    has_seasonal_pattern: bool
    peak_months: list[int]
    off_peak_months: list[int]
    first_movement: datetime
    last_movement: datetime


@dataclass(frozen=True)
class ClassificationSample:
    vector: FeatureVector
    next_location_id: str
    next_location_type: str = ""
    next_is_warehouse: bool = False

    @property
    def label(self) -> str:
        return self.next_location_id


@dataclass(frozen=True)
class RegressionSample:
    vector: FeatureVector
    stay_days: float
    from_location_id: str = ""
    to_location_id: str = ""
    region: str = ""
    movement_type: str = "Unknown"

    @property
    def label(self) -> float:
        return self.stay_days


@dataclass(frozen=True)
class ClusteringSample:
    vector: FeatureVector
    history: tuple[MovementFeatures, ...]
    aggregates: EntityAggregateFeatures | None = None

    @property
    def entity_id(self) -> str:
        return self.vector.entity_id


@dataclass(frozen=True)
class DatasetMetadata:
    total_records: int
    valid_movements: int
    skipped_records: int
    unique_entities: int
    unique_locations: int
    date_range_start: datetime | None
    date_range_end: datetime | None
    quality_score: float
    classification_samples: int
    regression_samples: int
    clustering_samples: int


@dataclass(frozen=True)
class TrainingDataset:
    classification: list[ClassificationSample]
    regression: list[RegressionSample]
    clustering: list[ClusteringSample]
    metadata: DatasetMetadata
    aggregates: dict[str, EntityAggregateFeatures] = field(default_factory=dict)

    @property
    def feature_names(self) -> list[str]:
        for collection in (self.classification, self.regression, self.clustering):
            if collection:
                return list(collection[0].vector.feature_names)
        return []


@dataclass(frozen=True)
class EntityState:
    """Inference input for one entity: its latest vector and where it sits now."""

    entity_id: str
    vector: FeatureVector
    current_location: str
    current_idle_days: float
