"""
Data Validation — Pandera schemas for the movement pipeline.

Three validation gates:
  1. MovementSchema   — raw movement rows before feature extraction
  2. LocationSchema   — location registry rows
  3. FeatureSchema    — vectorized base-layout features before training

Gates warn and pass the frame through by default. Bad rows are reported
by ml.quality and skipped by ml.dataprep, so a failed gate is not fatal
unless the caller asks for raise_on_error=True.

Usage:
    from ml.validate import validate_movements, validate_features
    validated_df = validate_movements(raw_df)
"""

import pandas as pd
import pandera as pa
import structlog
from pandera import Check, Column, DataFrameSchema

from fleet.records import MOVEMENT_TYPES
from ml.features import FEATURE_NAMES, FeatureVector

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────
# 1. Movement Schema (raw rows before extract_movement_features)
# ──────────────────────────────────────────────────────────────────────

MovementSchema = DataFrameSchema(
    columns={
        "entity_id": Column(str, checks=[Check.str_length(min_value=1)], nullable=False, coerce=True),
        "from_location_id": Column(str, nullable=True, coerce=True),
        "to_location_id": Column(str, nullable=True, coerce=True),
        "departure_time": Column(pa.DateTime, nullable=False, coerce=True),
        "arrival_time": Column(pa.DateTime, nullable=False, coerce=True),
        "movement_type": Column(str, nullable=True, coerce=True, required=False),
        "region": Column(str, nullable=True, coerce=True, required=False),
    },
    checks=[
        Check(
            lambda df: df["arrival_time"] >= df["departure_time"],
            error="arrival_time must not precede departure_time",
        ),
    ],
    # Allow extra columns (location types, sheet bookkeeping, etc.)
    strict=False,
    coerce=True,
    name="Movements",
)


# ──────────────────────────────────────────────────────────────────────
# 2. Location Schema
# ──────────────────────────────────────────────────────────────────────

LocationSchema = DataFrameSchema(
    columns={
        "location_id": Column(str, checks=[Check.str_length(min_value=1)], nullable=False, coerce=True, unique=True),
        "name": Column(str, nullable=True, coerce=True, required=False),
        "type": Column(str, nullable=True, coerce=True, required=False),
        "latitude": Column(float, checks=[Check.in_range(-90, 90)], nullable=True, coerce=True, required=False),
        "longitude": Column(float, checks=[Check.in_range(-180, 180)], nullable=True, coerce=True, required=False),
    },
    strict=False,
    coerce=True,
    name="Locations",
)


# ──────────────────────────────────────────────────────────────────────
# 3. Feature Schema (base layout)
# ──────────────────────────────────────────────────────────────────────


def _build_feature_schema() -> DataFrameSchema:
    columns = {
        name: Column(float, checks=[Check(lambda s: s.abs() < float("inf"), error="non-finite value")], coerce=True)
        for name in FEATURE_NAMES
    }
    columns["day_of_week"] = Column(float, checks=[Check.in_range(0, 6)], coerce=True)
    columns["month"] = Column(float, checks=[Check.in_range(1, 12)], coerce=True)
    columns["quarter"] = Column(float, checks=[Check.in_range(1, 4)], coerce=True)
    columns["movement_consistency"] = Column(float, checks=[Check.in_range(0, 1)], coerce=True)
    columns["movement_type_encoded"] = Column(float, checks=[Check.isin([0.0, 0.25, 0.5, 1.0])], coerce=True)
    return DataFrameSchema(columns=columns, strict=False, coerce=True, name="Features")


FeatureSchema = _build_feature_schema()


def vectors_to_frame(vectors: list[FeatureVector]) -> pd.DataFrame:
    """One row per vector, one column per feature name, entity_id first."""
    rows = [{"entity_id": v.entity_id, **dict(zip(v.feature_names, v.features))} for v in vectors]
    return pd.DataFrame(rows)


# ──────────────────────────────────────────────────────────────────────
# Validation Functions
# ──────────────────────────────────────────────────────────────────────


def _run_gate(
    schema: DataFrameSchema,
    df: pd.DataFrame,
    event: str,
    raise_on_error: bool,
) -> pd.DataFrame:
    logger.info(event, rows=len(df), columns=list(df.columns))
    try:
        validated = schema.validate(df, lazy=True)
        logger.info(f"{event}.passed", rows=len(validated))
        return validated
    except pa.errors.SchemaErrors as e:
        logger.warning(
            f"{event}.issues",
            n_errors=len(e.failure_cases),
            errors=e.failure_cases.to_dict("records")[:5],  # Log first 5
        )
        if raise_on_error:
            raise
        return df


def validate_movements(df: pd.DataFrame, raise_on_error: bool = False) -> pd.DataFrame:
    """
    Validate raw movement rows.

    Returns the validated (coerced) frame, or the original frame when
    validation fails and raise_on_error=False.
    """
    unknown = set()
    if "movement_type" in df.columns:
        known = {t.lower() for t in MOVEMENT_TYPES}
        unknown = {
            str(v) for v in df["movement_type"].dropna().unique()
            if str(v).strip() and str(v).strip().split()[0].lower() not in known
        }
    if unknown:
        logger.info("validation.movements.unknown_types", values=sorted(unknown)[:10])
    return _run_gate(MovementSchema, df, "validation.movements", raise_on_error)


def validate_locations(df: pd.DataFrame, raise_on_error: bool = False) -> pd.DataFrame:
    """Validate the location registry (ids present and unique, coordinates in range)."""
    return _run_gate(LocationSchema, df, "validation.locations", raise_on_error)


def validate_features(df: pd.DataFrame, raise_on_error: bool = False) -> pd.DataFrame:
    """
    Validate a base-layout feature frame.

    Also logs feature coverage so silently missing columns show up in logs.
    """
    expected = set(FEATURE_NAMES)
    actual = set(df.columns) & expected
    coverage = len(actual) / len(expected) * 100
    logger.info(
        "validation.features.coverage",
        coverage_pct=round(coverage, 1),
        missing=sorted(expected - actual)[:5],
    )
    return _run_gate(FeatureSchema, df, "validation.features", raise_on_error)
