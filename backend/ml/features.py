"""
Feature Engineering — fixed-layout movement feature vectors.

Base layout (17 features, order is part of the model contract):
  1. Calendar (3)        — day_of_week, month, quarter of the departure
  2. History (3)         — avg idle days, total movements, movements/month
  3. Current state (4)   — current idle, idle vs average, warehouse flag,
                           movement type encoding
  4. Behaviour (5)       — consistency, idle stddev, seasonal flag,
                           in-peak-month flag, recency
  5. Affinity (2)        — region visit share, warehouse specialization

Optional expansions are strictly additive (base features are never replaced):
  - interaction features  (pairwise products)
  - polynomial features   (<name>_squared)
  - time-series window    (prev_<i>_idle_days / prev_<i>_is_warehouse)

Vectors from the same construction path always share length and name order.
Models compare the layout on every call and raise FeatureMismatchError on
drift instead of silently truncating.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

import numpy as np
import structlog

if TYPE_CHECKING:
    from ml.dataset import EntityAggregateFeatures, MovementFeatures

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════════════════
# Feature Layout
# ══════════════════════════════════════════════════════════════════════════

FEATURE_NAMES = [
    # Calendar (3)
    "day_of_week", "month", "quarter",
    # History (3)
    "avg_historical_idle_days", "total_historical_movements", "movements_per_month",
    # Current state (4)
    "current_idle_days", "idle_days_vs_average", "is_warehouse", "movement_type_encoded",
    # Behaviour (5)
    "movement_consistency", "std_idle_days", "has_seasonal_pattern",
    "is_in_peak_season", "days_since_last_movement",
    # Affinity (2)
    "region_affinity", "warehouse_specialization",
]  # 17 total

MOVEMENT_TYPE_ENCODING = {"Full": 1.0, "Half": 0.5, "Zero": 0.0, "Unknown": 0.25}

INTERACTION_FEATURE_NAMES = [
    "idle_days_x_warehouse",
    "day_of_week_x_warehouse",
    "frequency_x_consistency",
    "idle_vs_average_x_recency",
]

MissingStrategy = Literal["mean", "forward_fill", "drop"]
ScalingMethod = Literal["minmax", "standard"]


class FeatureMismatchError(ValueError):
    """Raised when a vector's layout disagrees with the layout a caller expects."""


class ScalerNotFittedError(RuntimeError):
    """Raised when a FeatureScaler is used before fit()."""


# ══════════════════════════════════════════════════════════════════════════
# Feature Vector
# ══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FeatureVector:
    entity_id: str
    features: tuple[float, ...]
    feature_names: tuple[str, ...]
    timestamp: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    normalized: tuple[float, ...] | None = None
    scaler_id: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "features", tuple(float(v) for v in self.features))
        object.__setattr__(self, "feature_names", tuple(self.feature_names))
        if len(self.features) != len(self.feature_names):
            raise FeatureMismatchError(
                f"Vector for {self.entity_id!r} has {len(self.features)} values "
                f"but {len(self.feature_names)} names"
            )
        if self.normalized is not None:
            object.__setattr__(self, "normalized", tuple(float(v) for v in self.normalized))
            if len(self.normalized) != len(self.features):
                raise FeatureMismatchError(
                    f"Normalized copy for {self.entity_id!r} has {len(self.normalized)} values, "
                    f"expected {len(self.features)}"
                )

    def __len__(self) -> int:
        return len(self.features)

    def as_array(self, normalized: bool = False) -> np.ndarray:
        if normalized and self.normalized is not None:
            return np.asarray(self.normalized, dtype=float)
        return np.asarray(self.features, dtype=float)

    def value(self, name: str, default: float = 0.0) -> float:
        try:
            return self.features[self.feature_names.index(name)]
        except ValueError:
            return default

    def content_hash(self) -> str:
        """Stable digest of names + values (metadata and normalization excluded)."""
        payload = json.dumps(
            {"names": list(self.feature_names), "values": [repr(v) for v in self.features]},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "features": list(self.features),
            "feature_names": list(self.feature_names),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": dict(self.metadata),
            "normalized": list(self.normalized) if self.normalized is not None else None,
            "scaler_id": self.scaler_id,
        }


def check_layout(vector: FeatureVector, expected_names: Sequence[str]) -> None:
    """Raise FeatureMismatchError unless the vector has exactly the expected names in order."""
    if len(vector.feature_names) != len(expected_names):
        raise FeatureMismatchError(
            f"Expected {len(expected_names)} features, got {len(vector.feature_names)} "
            f"for entity {vector.entity_id!r}"
        )
    if tuple(vector.feature_names) != tuple(expected_names):
        diffs = [
            (i, want, got)
            for i, (want, got) in enumerate(zip(expected_names, vector.feature_names))
            if want != got
        ]
        raise FeatureMismatchError(f"Feature order differs at positions {diffs[:3]}")


def stack_vectors(vectors: Sequence[FeatureVector], normalized: bool = False) -> np.ndarray:
    """Stack vectors into a 2-D matrix, refusing mixed layouts."""
    if not vectors:
        return np.empty((0, 0))
    names = vectors[0].feature_names
    for v in vectors[1:]:
        check_layout(v, names)
    return np.vstack([v.as_array(normalized=normalized) for v in vectors])


def mask_current_idle(vector: FeatureVector) -> FeatureVector:
    """
    Replace the current-idle slots with the entity's historical average.

    current_idle_days takes avg_historical_idle_days and idle_days_vs_average
    becomes 1.0, the same layout vectorize(..., mask_current_idle=True)
    produces. Vectors without those slots come back unchanged.
    """
    names = vector.feature_names
    if "current_idle_days" not in names or "avg_historical_idle_days" not in names:
        return vector
    values = list(vector.features)
    values[names.index("current_idle_days")] = vector.value("avg_historical_idle_days")
    if "idle_days_vs_average" in names:
        values[names.index("idle_days_vs_average")] = 1.0
    if tuple(values) == vector.features:
        return vector
    return replace(vector, features=tuple(values), normalized=None, scaler_id=None)


# ══════════════════════════════════════════════════════════════════════════
# Vectorization
# ══════════════════════════════════════════════════════════════════════════


def vectorize(
    movement: MovementFeatures,
    aggregates: EntityAggregateFeatures,
    mask_current_idle: bool = False,
) -> FeatureVector:
    """
    Encode one movement plus its entity's aggregates as a base-layout vector.

    mask_current_idle replaces the current-idle slots with the entity's
    historical average (ratio 1.0). Stay-duration training uses it because
    the current idle time of a completed stay is the regression target.
    """
    avg_idle = aggregates.avg_idle_days
    if mask_current_idle:
        current_idle = avg_idle
        idle_ratio = 1.0
    else:
        current_idle = movement.idle_days
        idle_ratio = movement.idle_days / (avg_idle if avg_idle > 0 else 1.0)

    total = aggregates.total_movements
    region_visits = aggregates.region_frequency.get(movement.region, 0)
    wh_days = aggregates.total_stay_days_warehouse
    off_days = aggregates.total_stay_days_offsite

    values = [
        movement.day_of_week,
        movement.month,
        movement.quarter,
        avg_idle,
        total,
        aggregates.movements_per_month,
        current_idle,
        idle_ratio,
        1.0 if movement.is_warehouse else 0.0,
        MOVEMENT_TYPE_ENCODING.get(movement.movement_type, 0.25),
        aggregates.movement_consistency,
        aggregates.std_idle_days,
        1.0 if aggregates.has_seasonal_pattern else 0.0,
        1.0 if movement.month in aggregates.peak_months else 0.0,
        aggregates.days_since_last_movement,
        region_visits / max(total, 1),
        wh_days / (wh_days + off_days + 1.0),
    ]

    return FeatureVector(
        entity_id=movement.entity_id,
        features=tuple(values),
        feature_names=tuple(FEATURE_NAMES),
        timestamp=movement.departure_time,
        metadata={
            "current_location": movement.to_location_id,
            "current_idle_days": movement.idle_days,
            "is_warehouse": movement.is_warehouse,
        },
    )


def vectorize_batch(
    movements: Iterable[MovementFeatures],
    aggregates: dict[str, EntityAggregateFeatures],
) -> list[FeatureVector]:
    """Vectorize many movements; movements without aggregates are skipped."""
    vectors = []
    skipped = 0
    for mov in movements:
        agg = aggregates.get(mov.entity_id)
        if agg is None:
            skipped += 1
            continue
        vectors.append(vectorize(mov, agg))
    if skipped:
        logger.warning("features.missing_aggregates", skipped=skipped)
    return vectors


# ══════════════════════════════════════════════════════════════════════════
# Expansion (interaction, polynomial, time-series)
# ══════════════════════════════════════════════════════════════════════════


def _extend(vector: FeatureVector, values: list[float], names: list[str]) -> FeatureVector:
    return replace(
        vector,
        features=vector.features + tuple(values),
        feature_names=vector.feature_names + tuple(names),
        normalized=None,
        scaler_id=None,
    )


def add_interaction_features(vector: FeatureVector) -> FeatureVector:
    """Append pairwise products of selected base features."""
    idle = vector.value("current_idle_days")
    wh = vector.value("is_warehouse")
    dow = vector.value("day_of_week")
    freq = vector.value("movements_per_month")
    consistency = vector.value("movement_consistency")
    ratio = vector.value("idle_days_vs_average")
    recency = vector.value("days_since_last_movement")

    values = [
        idle * wh,
        dow * wh,
        freq * consistency,
        ratio * recency,
    ]
    return _extend(vector, values, list(INTERACTION_FEATURE_NAMES))


def add_polynomial_features(
    vector: FeatureVector,
    names: Sequence[str] | None = None,
) -> FeatureVector:
    """Append <name>_squared for every base feature present (or for the given names)."""
    targets = list(names) if names is not None else [n for n in FEATURE_NAMES if n in vector.feature_names]
    values = [vector.value(n) ** 2 for n in targets]
    return _extend(vector, values, [f"{n}_squared" for n in targets])


def time_series_features(
    history: Sequence[MovementFeatures],
    window: int,
    average_idle_days: float | None = None,
) -> tuple[list[float], list[str]]:
    """
    Flatten the last `window` movements into (idle_days, is_warehouse) pairs.

    Slot 1 is the most recent movement. Missing slots are padded with the
    entity's average idle days and a warehouse flag of 0, and their names
    carry a _padded suffix so padded positions are never mistaken for data.
    """
    if window < 1:
        raise ValueError("window must be at least 1")

    ordered = sorted(history, key=lambda m: (m.departure_time, m.sequence))
    recent = list(reversed(ordered[-window:]))
    if average_idle_days is None:
        average_idle_days = float(np.mean([m.idle_days for m in ordered])) if ordered else 0.0

    values: list[float] = []
    names: list[str] = []
    for i in range(1, window + 1):
        if i <= len(recent):
            mov = recent[i - 1]
            values += [mov.idle_days, 1.0 if mov.is_warehouse else 0.0]
            names += [f"prev_{i}_idle_days", f"prev_{i}_is_warehouse"]
        else:
            values += [average_idle_days, 0.0]
            names += [f"prev_{i}_idle_days_padded", f"prev_{i}_is_warehouse_padded"]
    return values, names


def add_time_series_features(
    vector: FeatureVector,
    history: Sequence[MovementFeatures],
    window: int,
    average_idle_days: float | None = None,
) -> FeatureVector:
    values, names = time_series_features(history, window, average_idle_days)
    return _extend(vector, values, names)


# ══════════════════════════════════════════════════════════════════════════
# Normalization
# ══════════════════════════════════════════════════════════════════════════


class FeatureScaler:
    """
    Per-feature-name min/max and mean/std statistics.

    Statistics are keyed by name, not position, so vectors with reordered
    names normalize correctly. Names never seen during fit pass through
    unchanged. Each fit gets a new fit_id which is stamped onto every
    vector it transforms; refitting makes older normalized copies stale.
    """

    def __init__(self, method: ScalingMethod = "standard"):
        if method not in ("minmax", "standard"):
            raise ValueError(f"Unknown scaling method: {method}")
        self.method = method
        self.stats: dict[str, dict[str, float]] = {}
        self.fit_id: str | None = None

    @property
    def is_fitted(self) -> bool:
        return self.fit_id is not None

    def fit(self, vectors: Sequence[FeatureVector]) -> "FeatureScaler":
        columns: dict[str, list[float]] = {}
        for vec in vectors:
            for name, value in zip(vec.feature_names, vec.features):
                if math.isfinite(value):
                    columns.setdefault(name, []).append(value)

        self.stats = {
            name: {
                "min": float(np.min(vals)),
                "max": float(np.max(vals)),
                "mean": float(np.mean(vals)),
                "std": float(np.std(vals)),
            }
            for name, vals in columns.items()
        }
        digest = hashlib.sha256(json.dumps(self.stats, sort_keys=True).encode()).hexdigest()
        self.fit_id = f"{self.method}-{digest[:12]}"
        logger.info("features.scaler_fitted", method=self.method, features=len(self.stats), vectors=len(vectors))
        return self

    def _require_fitted(self):
        if not self.is_fitted:
            raise ScalerNotFittedError("FeatureScaler.fit() must be called before transform")

    def _scale(self, name: str, value: float, method: ScalingMethod) -> float:
        s = self.stats.get(name)
        if s is None:
            return value
        if method == "minmax":
            span = s["max"] - s["min"]
            return 0.0 if span == 0 else (value - s["min"]) / span
        return 0.0 if s["std"] == 0 else (value - s["mean"]) / s["std"]

    def transform_values(self, vector: FeatureVector, method: ScalingMethod | None = None) -> list[float]:
        self._require_fitted()
        method = method or self.method
        return [self._scale(n, v, method) for n, v in zip(vector.feature_names, vector.features)]

    def transform(self, vector: FeatureVector, method: ScalingMethod | None = None) -> FeatureVector:
        """Return a copy carrying the normalized values and this scaler's fit_id."""
        return replace(vector, normalized=tuple(self.transform_values(vector, method)), scaler_id=self.fit_id)

    def transform_batch(self, vectors: Iterable[FeatureVector]) -> list[FeatureVector]:
        return [self.transform(v) for v in vectors]

    def inverse_transform(
        self,
        values: Sequence[float],
        names: Sequence[str],
        method: ScalingMethod | None = None,
    ) -> list[float]:
        self._require_fitted()
        method = method or self.method
        out = []
        for name, value in zip(names, values):
            s = self.stats.get(name)
            if s is None:
                out.append(float(value))
            elif method == "minmax":
                out.append(s["min"] + value * (s["max"] - s["min"]))
            else:
                out.append(s["mean"] + value * s["std"])
        return out

    def is_current(self, vector: FeatureVector) -> bool:
        """True when the vector was normalized by this scaler's latest fit."""
        return vector.normalized is not None and vector.scaler_id == self.fit_id

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "fit_id": self.fit_id, "stats": self.stats}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureScaler":
        scaler = cls(method=data.get("method", "standard"))
        scaler.stats = {k: dict(v) for k, v in data.get("stats", {}).items()}
        scaler.fit_id = data.get("fit_id")
        return scaler


# ══════════════════════════════════════════════════════════════════════════
# Missing values & outliers
# ══════════════════════════════════════════════════════════════════════════


def _is_missing(value: float) -> bool:
    return value is None or not math.isfinite(value)


def fill_with_mean(vectors: Sequence[FeatureVector]) -> list[FeatureVector]:
    """Replace non-finite values with the finite mean of the same-named feature (0 if none)."""
    sums: dict[str, list[float]] = {}
    for vec in vectors:
        for name, value in zip(vec.feature_names, vec.features):
            if not _is_missing(value):
                sums.setdefault(name, []).append(value)
    means = {name: float(np.mean(vals)) for name, vals in sums.items()}

    out = []
    for vec in vectors:
        if not any(_is_missing(v) for v in vec.features):
            out.append(vec)
            continue
        filled = [means.get(n, 0.0) if _is_missing(v) else v for n, v in zip(vec.feature_names, vec.features)]
        out.append(replace(vec, features=tuple(filled), normalized=None, scaler_id=None))
    return out


def forward_fill(vectors: Sequence[FeatureVector]) -> list[FeatureVector]:
    """Carry the previous vector's value (by name) into missing slots; 0 when nothing precedes."""
    last_seen: dict[str, float] = {}
    out = []
    for vec in vectors:
        filled = []
        for name, value in zip(vec.feature_names, vec.features):
            if _is_missing(value):
                value = last_seen.get(name, 0.0)
            last_seen[name] = value
            filled.append(value)
        if tuple(filled) == vec.features:
            out.append(vec)
        else:
            out.append(replace(vec, features=tuple(filled), normalized=None, scaler_id=None))
    return out


def drop_missing(vectors: Sequence[FeatureVector]) -> list[FeatureVector]:
    """Exclude vectors containing any non-finite value."""
    kept = [v for v in vectors if not any(_is_missing(x) for x in v.features)]
    if len(kept) != len(vectors):
        logger.info("features.dropped_missing", dropped=len(vectors) - len(kept), kept=len(kept))
    return kept


_MISSING_STRATEGIES = {
    "mean": fill_with_mean,
    "forward_fill": forward_fill,
    "drop": drop_missing,
}


def handle_missing(vectors: Sequence[FeatureVector], strategy: MissingStrategy) -> list[FeatureVector]:
    """Apply the caller-selected missing-value strategy. Inputs are never mutated."""
    try:
        handler = _MISSING_STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown missing-value strategy: {strategy!r}") from None
    return handler(vectors)


def detect_outliers_iqr(values: Sequence[float], k: float = 1.5) -> list[bool]:
    """Flag values outside [Q1 - k·IQR, Q3 + k·IQR]."""
    if len(values) == 0:
        return []
    arr = np.asarray(values, dtype=float)
    q1, q3 = np.quantile(arr, [0.25, 0.75])
    iqr = q3 - q1
    lower, upper = q1 - k * iqr, q3 + k * iqr
    return [bool(v < lower or v > upper) for v in arr]


def detect_outliers_zscore(values: Sequence[float], threshold: float = 3.0) -> list[bool]:
    """Flag values with |z| > threshold. A constant column has no outliers."""
    if len(values) == 0:
        return []
    arr = np.asarray(values, dtype=float)
    std = float(np.std(arr))
    if std == 0:
        return [False] * len(arr)
    z = (arr - float(np.mean(arr))) / std
    return [bool(abs(v) > threshold) for v in z]


def feature_column(vectors: Iterable[FeatureVector], name: str) -> list[float]:
    """Values of one named feature across vectors (vectors lacking it are skipped)."""
    return [v.features[v.feature_names.index(name)] for v in vectors if name in v.feature_names]
