"""
Data Quality — four-way scoring of raw movement records.

  completeness  — records with every required field non-empty
  consistency   — from/to location ids that resolve in the location registry
  validity      — records whose timestamps parse and run arrival ≥ departure
  accuracy      — registry coordinates inside the configured bounding box

overall_score is the unweighted mean of the four. Every category below 1.0
contributes one itemized, severity-tagged issue. This module reports; it
never raises on bad data, and an empty input yields an all-zero report.
"""

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import pandas as pd
import structlog

from core.config import get_settings
from fleet.records import LocationRecord, MovementRecord, movements_to_frame, parse_timestamp

logger = structlog.get_logger()

Severity = Literal["critical", "warning", "info"]

REQUIRED_FIELDS = ["entity_id", "from_location_id", "to_location_id", "departure_time", "arrival_time"]

CRITICAL_BELOW = 0.7
WARNING_BELOW = 0.95


@dataclass(frozen=True)
class QualityIssue:
    category: str
    severity: Severity
    affected_records: int
    message: str
    remediation: str


@dataclass(frozen=True)
class DataQualityReport:
    overall_score: float
    completeness: float
    consistency: float
    validity: float
    accuracy: float
    total_records: int
    issues: list[QualityIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def classify_severity(score: float) -> Severity:
    if score < CRITICAL_BELOW:
        return "critical"
    if score < WARNING_BELOW:
        return "warning"
    return "info"


def _blank(series: pd.Series) -> pd.Series:
    return series.isna() | (series.astype(str).str.strip() == "")


def assess_data_quality(
    records: Sequence[MovementRecord],
    locations: Sequence[LocationRecord] | None = None,
    bbox: tuple[float, float, float, float] | None = None,
) -> DataQualityReport:
    """
    Score a batch of movement records.

    Args:
        records: raw movement records
        locations: location registry; without it consistency scores 1.0
            and an info issue notes the check was skipped
        bbox: (min_lat, max_lat, min_lon, max_lon); defaults to settings
    """
    if not records:
        logger.warning("quality.empty_input")
        return DataQualityReport(
            overall_score=0.0,
            completeness=0.0,
            consistency=0.0,
            validity=0.0,
            accuracy=0.0,
            total_records=0,
            issues=[
                QualityIssue(
                    category="completeness",
                    severity="critical",
                    affected_records=0,
                    message="No movement records supplied",
                    remediation="Check the upstream export or sheet fetch returned data",
                )
            ],
        )

    if bbox is None:
        s = get_settings()
        bbox = (s.bbox_min_lat, s.bbox_max_lat, s.bbox_min_lon, s.bbox_max_lon)

    df = movements_to_frame(records)
    n = len(df)
    issues: list[QualityIssue] = []

    # ── Completeness ──────────────────────────────────────────────────
    missing = pd.concat([_blank(df[c]) for c in REQUIRED_FIELDS], axis=1).any(axis=1)
    incomplete = int(missing.sum())
    completeness = 1.0 - incomplete / n
    if incomplete:
        issues.append(
            QualityIssue(
                category="completeness",
                severity=classify_severity(completeness),
                affected_records=incomplete,
                message=f"{incomplete} of {n} records miss a required field ({', '.join(REQUIRED_FIELDS)})",
                remediation="Fill entity ids, both location ids and both timestamps at the source",
            )
        )

    # ── Consistency ───────────────────────────────────────────────────
    ids = pd.concat([df["from_location_id"], df["to_location_id"]], ignore_index=True)
    ids = ids[~_blank(ids)]
    if locations is None:
        consistency = 1.0
        issues.append(
            QualityIssue(
                category="consistency",
                severity="info",
                affected_records=0,
                message="No location registry supplied; location ids were not checked",
                remediation="Pass the location list to verify location ids",
            )
        )
    else:
        known = {loc.location_id for loc in locations if loc.location_id}
        resolved = ids.isin(known)
        consistency = float(resolved.mean()) if len(ids) else 0.0
        bad_from = ~df["from_location_id"].isin(known) & ~_blank(df["from_location_id"])
        bad_to = ~df["to_location_id"].isin(known) & ~_blank(df["to_location_id"])
        unresolved_rows = int((bad_from | bad_to).sum())
        if consistency < 1.0:
            sample = sorted(set(ids[~resolved]))[:5]
            issues.append(
                QualityIssue(
                    category="consistency",
                    severity=classify_severity(consistency),
                    affected_records=unresolved_rows,
                    message=f"{int((~resolved).sum())} location references do not resolve (e.g. {sample})",
                    remediation="Add the missing locations to the registry or correct the ids",
                )
            )

    # ── Validity ──────────────────────────────────────────────────────
    departure = pd.to_datetime(df["departure_time"].map(parse_timestamp))
    arrival = pd.to_datetime(df["arrival_time"].map(parse_timestamp))
    valid = departure.notna() & arrival.notna() & (arrival >= departure)
    invalid = int((~valid).sum())
    validity = 1.0 - invalid / n
    if invalid:
        unparsed = int((departure.isna() | arrival.isna()).sum())
        issues.append(
            QualityIssue(
                category="validity",
                severity=classify_severity(validity),
                affected_records=invalid,
                message=(
                    f"{invalid} records have invalid timestamps "
                    f"({unparsed} unparseable, {invalid - unparsed} arrive before departing)"
                ),
                remediation="Use ISO-8601 timestamps and check arrival follows departure",
            )
        )

    # ── Accuracy ──────────────────────────────────────────────────────
    coords = [(loc.latitude, loc.longitude) for loc in (locations or []) if loc.has_coordinates]
    if coords:
        min_lat, max_lat, min_lon, max_lon = bbox
        inside = [min_lat <= lat <= max_lat and min_lon <= lon <= max_lon for lat, lon in coords]
        accuracy = sum(inside) / len(coords)
        outside = len(coords) - sum(inside)
        if outside:
            issues.append(
                QualityIssue(
                    category="accuracy",
                    severity=classify_severity(accuracy),
                    affected_records=outside,
                    message=f"{outside} of {len(coords)} locations fall outside the operating region",
                    remediation="Check for swapped latitude/longitude or wrong coordinate units",
                )
            )
    else:
        accuracy = 1.0

    overall = (completeness + consistency + validity + accuracy) / 4.0
    report = DataQualityReport(
        overall_score=overall,
        completeness=completeness,
        consistency=consistency,
        validity=validity,
        accuracy=accuracy,
        total_records=n,
        issues=issues,
    )
    logger.info(
        "quality.assessed",
        records=n,
        overall=round(overall, 3),
        completeness=round(completeness, 3),
        consistency=round(consistency, 3),
        validity=round(validity, 3),
        accuracy=round(accuracy, 3),
        issues=len(issues),
    )
    return report
