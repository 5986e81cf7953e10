"""
Data Preparation — raw movement records → features → labeled datasets.

Pipeline:
  1. extract_movement_features   — one MovementFeatures per valid record
  2. aggregate_entity_features   — one EntityAggregateFeatures per entity
  3. build_training_dataset      — classification / regression / clustering samples
  4. latest_entity_states        — per-entity inference state for batch scoring

prepare_dataset() runs all of it plus data-quality scoring in one call.

Rows missing an entity id, any location, or both timestamps are skipped
and counted; they never abort the build.

Usage:
    from ml.dataprep import prepare_dataset
    dataset = prepare_dataset(movements, locations, reference_time=now)
"""

from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

import numpy as np
import pandas as pd
import structlog

from core.config import get_settings
from fleet.records import (
    LocationRecord,
    MovementRecord,
    is_warehouse_location,
    location_index,
    movements_to_frame,
    normalize_movement_type,
    parse_timestamp,
)
from ml.dataset import (
    ClassificationSample,
    ClusteringSample,
    DatasetMetadata,
    EntityAggregateFeatures,
    EntityState,
    MovementFeatures,
    RegressionSample,
    TrainingDataset,
)
from ml.features import vectorize
from ml.quality import assess_data_quality

logger = structlog.get_logger()

DAYS_PER_MONTH = 30.44
SECONDS_PER_DAY = 86_400.0


def _resolve_reference_time(reference_time: datetime | None) -> datetime:
    if reference_time is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    parsed = parse_timestamp(reference_time)
    if parsed is None:
        raise ValueError(f"Unparseable reference_time: {reference_time!r}")
    return parsed


# ──────────────────────────────────────────────────────────────────────────
# 1. Per-movement features
# ──────────────────────────────────────────────────────────────────────────


def _prepare_frame(
    records: Sequence[MovementRecord],
) -> tuple[pd.DataFrame, int]:
    """Parse, clean and chronologically sort records. Returns (frame, skipped)."""
    df = movements_to_frame(records)
    if df.empty:
        return df, 0

    df["departure"] = pd.to_datetime(df["departure_time"].map(parse_timestamp))
    df["arrival"] = pd.to_datetime(df["arrival_time"].map(parse_timestamp))
    # A movement with one usable timestamp keeps it for both ends
    df["departure"] = df["departure"].fillna(df["arrival"])
    df["arrival"] = df["arrival"].fillna(df["departure"])
    # Destination falls back to origin when only the origin is known
    df["to_location_id"] = df["to_location_id"].where(df["to_location_id"] != "", df["from_location_id"])

    valid = (
        (df["entity_id"] != "")
        & ((df["to_location_id"] != "") | (df["from_location_id"] != ""))
        & df["departure"].notna()
    )
    skipped = int((~valid).sum())
    if skipped:
        logger.warning(
            "dataprep.records_skipped",
            skipped=skipped,
            missing_entity=int((df["entity_id"] == "").sum()),
            missing_location=int((df["to_location_id"] == "").sum()),
            missing_timestamps=int(df["departure"].isna().sum()),
        )

    df = df.loc[valid].copy()
    df = df.sort_values(["entity_id", "departure", "arrival"], kind="mergesort").reset_index(drop=True)
    return df, skipped


def extract_movement_features(
    records: Sequence[MovementRecord],
    locations: Iterable[LocationRecord] | None = None,
    reference_time: datetime | None = None,
    peak_season_months: Sequence[int] | None = None,
    warehouse_keywords: Sequence[str] | None = None,
) -> list[MovementFeatures]:
    """
    Derive per-movement features, ordered by entity then departure time.

    idle_days is the gap between this arrival and the entity's next
    departure. For an entity's latest movement it runs until
    reference_time. Negative gaps (overlapping records) clamp to 0.
    """
    settings = get_settings()
    peak_season_months = settings.peak_season_months if peak_season_months is None else list(peak_season_months)
    warehouse_keywords = settings.warehouse_name_keywords if warehouse_keywords is None else list(warehouse_keywords)
    now = _resolve_reference_time(reference_time)
    registry = location_index(locations or [])

    df, skipped = _prepare_frame(records)
    if df.empty:
        logger.info("dataprep.features_extracted", movements=0, skipped=skipped)
        return []

    next_departure = df.groupby("entity_id")["departure"].shift(-1)
    gap_end = next_departure.fillna(pd.Timestamp(now))
    df["idle_days"] = ((gap_end - df["arrival"]).dt.total_seconds() / SECONDS_PER_DAY).clip(lower=0.0)
    df["sequence"] = df.groupby("entity_id").cumcount()

    def _location_type(location_id: str, declared: str) -> tuple[str, bool]:
        loc = registry.get(location_id)
        loc_type = declared or (loc.type if loc else "")
        name = loc.name if loc else location_id
        return loc_type, is_warehouse_location(loc_type, name, warehouse_keywords)

    features: list[MovementFeatures] = []
    previous_entity = None
    previous_type = None
    streak = 0
    for row in df.itertuples(index=False):
        movement_type = normalize_movement_type(row.movement_type)
        if row.entity_id != previous_entity or movement_type != previous_type:
            streak = 1
        else:
            streak += 1
        previous_entity, previous_type = row.entity_id, movement_type

        to_type, to_wh = _location_type(row.to_location_id, row.to_location_type)
        from_type, from_wh = _location_type(row.from_location_id, row.from_location_type)
        region = row.region or (registry[row.to_location_id].region if row.to_location_id in registry else "")
        departure = row.departure.to_pydatetime()

        features.append(
            MovementFeatures(
                entity_id=row.entity_id,
                sequence=int(row.sequence),
                from_location_id=row.from_location_id,
                from_location_type=from_type,
                to_location_id=row.to_location_id,
                to_location_type=to_type,
                region=region,
                departure_time=departure,
                arrival_time=row.arrival.to_pydatetime(),
                idle_days=float(row.idle_days),
                movement_type=movement_type,
                day_of_week=departure.weekday(),
                month=departure.month,
                quarter=(departure.month - 1) // 3 + 1,
                is_warehouse=to_wh,
                from_is_warehouse=from_wh,
                is_seasonal=departure.month in peak_season_months,
                consecutive_same_type=streak,
            )
        )

    logger.info(
        "dataprep.features_extracted",
        movements=len(features),
        skipped=skipped,
        entities=df["entity_id"].nunique(),
    )
    return features


# ──────────────────────────────────────────────────────────────────────────
# 2. Per-entity aggregates
# ──────────────────────────────────────────────────────────────────────────


def _mean_std(values: Sequence[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    arr = np.asarray(values, dtype=float)
    return float(arr.mean()), float(arr.std())


def _mode(values: Iterable[str]) -> str:
    counts = Counter(v for v in values if v)
    return counts.most_common(1)[0][0] if counts else ""


def movement_consistency(gaps_days: Sequence[float], min_gaps: int = 2) -> float:
    """Inverse coefficient of variation of inter-movement gaps, clamped to [0, 1]."""
    if len(gaps_days) < min_gaps:
        return 0.0
    mean, std = _mean_std(gaps_days)
    if mean <= 0:
        return 0.0
    cv = std / mean
    if cv == 0:
        return 1.0
    return float(min(1.0, max(0.0, 1.0 / cv)))


def seasonal_months(
    months: Sequence[int],
    multiplier: float = 1.5,
) -> tuple[list[int], list[int]]:
    """
    Peak and off-peak months-of-year from a list of movement months.

    Peak: count > multiplier × mean count over active months.
    Off-peak: count < 0.5 × that mean (months with no movements included).
    """
    if not months:
        return [], []
    counts = Counter(months)
    mean = len(months) / len(counts)
    peak = sorted(m for m, c in counts.items() if c > multiplier * mean)
    off_peak = [m for m in range(1, 13) if counts.get(m, 0) < 0.5 * mean]
    return peak, off_peak


def aggregate_entity_features(
    features: Sequence[MovementFeatures],
    reference_time: datetime | None = None,
    min_gaps: int | None = None,
    peak_multiplier: float | None = None,
) -> dict[str, EntityAggregateFeatures]:
    """Roll per-movement features up into fresh per-entity statistics."""
    settings = get_settings()
    min_gaps = settings.min_gaps_for_consistency if min_gaps is None else min_gaps
    peak_multiplier = settings.peak_month_multiplier if peak_multiplier is None else peak_multiplier
    now = _resolve_reference_time(reference_time)

    by_entity: dict[str, list[MovementFeatures]] = {}
    for mov in features:
        by_entity.setdefault(mov.entity_id, []).append(mov)

    aggregates: dict[str, EntityAggregateFeatures] = {}
    for entity_id, movements in by_entity.items():
        movements = sorted(movements, key=lambda m: (m.departure_time, m.sequence))
        idle = [m.idle_days for m in movements]
        wh_idle = [m.idle_days for m in movements if m.is_warehouse]
        off_idle = [m.idle_days for m in movements if not m.is_warehouse]
        avg_idle, std_idle = _mean_std(idle)
        avg_wh, std_wh = _mean_std(wh_idle)
        avg_off, std_off = _mean_std(off_idle)

        first = movements[0].departure_time
        last = movements[-1].departure_time
        span_days = (last - first).total_seconds() / SECONDS_PER_DAY
        departures = [m.departure_time for m in movements]
        gaps = [(b - a).total_seconds() / SECONDS_PER_DAY for a, b in zip(departures, departures[1:])]

        type_counts = Counter(m.movement_type for m in movements)
        peak, off_peak = seasonal_months([m.month for m in movements], peak_multiplier)
        warehouses = [m.to_location_id for m in movements if m.is_warehouse]

        aggregates[entity_id] = EntityAggregateFeatures(
            entity_id=entity_id,
            total_movements=len(movements),
            avg_idle_days=avg_idle,
            std_idle_days=std_idle,
            median_idle_days=float(np.median(idle)),
            avg_idle_days_warehouse=avg_wh,
            std_idle_days_warehouse=std_wh,
            avg_idle_days_offsite=avg_off,
            std_idle_days_offsite=std_off,
            total_stay_days_warehouse=float(sum(wh_idle)),
            total_stay_days_offsite=float(sum(off_idle)),
            most_common_from_location=_mode(m.from_location_id for m in movements),
            most_common_to_location=_mode(m.to_location_id for m in movements),
            most_common_warehouse=_mode(warehouses) or None,
            region_frequency=dict(Counter(m.region for m in movements if m.region)),
            movements_per_month=len(movements) / max(span_days / DAYS_PER_MONTH, 1.0),
            movement_type_distribution={t: c / len(movements) for t, c in type_counts.items()},
            movement_consistency=movement_consistency(gaps, min_gaps),
            days_since_last_movement=max(0.0, (now - last).total_seconds() / SECONDS_PER_DAY),
            has_seasonal_pattern=bool(peak),
            peak_months=peak,
            off_peak_months=off_peak,
            first_movement=first,
            last_movement=last,
        )

    logger.info("dataprep.aggregates_built", entities=len(aggregates))
    return aggregates


# ──────────────────────────────────────────────────────────────────────────
# 3. Training dataset
# ──────────────────────────────────────────────────────────────────────────


def _group_history(features: Sequence[MovementFeatures]) -> dict[str, list[MovementFeatures]]:
    grouped: dict[str, list[MovementFeatures]] = {}
    for mov in features:
        grouped.setdefault(mov.entity_id, []).append(mov)
    for movements in grouped.values():
        movements.sort(key=lambda m: (m.departure_time, m.sequence))
    return grouped


def _chronology_score(features: Sequence[MovementFeatures]) -> float:
    if not features:
        return 0.0
    ok = sum(1 for m in features if m.arrival_time >= m.departure_time)
    return ok / len(features)


def build_training_dataset(
    features: Sequence[MovementFeatures],
    aggregates: dict[str, EntityAggregateFeatures],
    total_records: int | None = None,
    quality_score: float | None = None,
) -> TrainingDataset:
    """
    Assemble the three labeled sample collections.

    Every movement with a following movement for the same entity yields one
    classification sample (label = next destination) and one regression
    sample (label = days until the next departure). Every entity yields
    one clustering sample from its latest movement.

    When quality_score is not supplied it falls back to the share of
    movements with chronological timestamps.
    """
    classification: list[ClassificationSample] = []
    regression: list[RegressionSample] = []
    clustering: list[ClusteringSample] = []

    history = _group_history(features)
    for entity_id, movements in history.items():
        agg = aggregates.get(entity_id)
        if agg is None:
            logger.warning("dataprep.missing_aggregates", entity_id=entity_id, movements=len(movements))
            continue

        for current, following in zip(movements, movements[1:]):
            classification.append(
                ClassificationSample(
                    vector=vectorize(current, agg),
                    next_location_id=following.to_location_id,
                    next_location_type=following.to_location_type,
                    next_is_warehouse=following.is_warehouse,
                )
            )
            regression.append(
                RegressionSample(
                    vector=vectorize(current, agg, mask_current_idle=True),
                    stay_days=current.idle_days,
                    from_location_id=current.from_location_id,
                    to_location_id=current.to_location_id,
                    region=current.region,
                    movement_type=current.movement_type,
                )
            )

        clustering.append(
            ClusteringSample(vector=vectorize(movements[-1], agg), history=tuple(movements), aggregates=agg)
        )

    locations = {m.to_location_id for m in features} | {m.from_location_id for m in features}
    locations.discard("")
    total = len(features) if total_records is None else total_records
    score = _chronology_score(features) if quality_score is None else quality_score

    metadata = DatasetMetadata(
        total_records=total,
        valid_movements=len(features),
        skipped_records=max(0, total - len(features)),
        unique_entities=len(history),
        unique_locations=len(locations),
        date_range_start=min((m.departure_time for m in features), default=None),
        date_range_end=max((m.arrival_time for m in features), default=None),
        quality_score=float(score),
        classification_samples=len(classification),
        regression_samples=len(regression),
        clustering_samples=len(clustering),
    )
    logger.info(
        "dataprep.dataset_built",
        classification=len(classification),
        regression=len(regression),
        clustering=len(clustering),
        quality_score=round(metadata.quality_score, 3),
    )
    return TrainingDataset(
        classification=classification,
        regression=regression,
        clustering=clustering,
        metadata=metadata,
        aggregates=dict(aggregates),
    )


# ──────────────────────────────────────────────────────────────────────────
# 4. Inference state
# ──────────────────────────────────────────────────────────────────────────


def latest_entity_states(
    features: Sequence[MovementFeatures],
    aggregates: dict[str, EntityAggregateFeatures],
) -> list[EntityState]:
    """One EntityState per entity from its latest movement (idle time runs to the reference time)."""
    states = []
    for entity_id, movements in _group_history(features).items():
        agg = aggregates.get(entity_id)
        if agg is None:
            continue
        latest = movements[-1]
        states.append(
            EntityState(
                entity_id=entity_id,
                vector=vectorize(latest, agg),
                current_location=latest.to_location_id,
                current_idle_days=latest.idle_days,
            )
        )
    return states


def prepare_dataset(
    records: Sequence[MovementRecord],
    locations: Sequence[LocationRecord] | None = None,
    reference_time: datetime | None = None,
) -> TrainingDataset:
    """Quality-score, extract, aggregate and build in one pass."""
    quality = assess_data_quality(records, locations)
    features = extract_movement_features(records, locations, reference_time=reference_time)
    aggregates = aggregate_entity_features(features, reference_time=reference_time)
    return build_training_dataset(
        features,
        aggregates,
        total_records=len(records),
        quality_score=quality.overall_score,
    )
