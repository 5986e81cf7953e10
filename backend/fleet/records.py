"""
Fleet Records — immutable movement and location inputs.

The surrounding application (sheet fetchers, CSV exports, dashboards) owns
all I/O and hands the core two lists:

  - MovementRecord: one relocation of a mobile unit between two locations
  - LocationRecord: the location registry (sites and warehouses)

Records are never mutated by the pipeline. Timestamps are kept exactly as
supplied (datetime, ISO string, or None) so data-quality scoring can report
unparseable values instead of losing them at construction time.

Usage:
    from fleet.records import movements_from_frame, locations_from_frame

    movements = movements_from_frame(pd.read_csv("movements.csv"))
    locations = locations_from_frame(pd.read_csv("locations.csv"))
"""

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from numbers import Number
from typing import Any, Literal

import pandas as pd

MovementType = Literal["Full", "Half", "Zero", "Unknown"]

MOVEMENT_TYPES: tuple[MovementType, ...] = ("Full", "Half", "Zero", "Unknown")

# Column aliases seen in exported movement sheets → canonical field name
MOVEMENT_COLUMN_ALIASES = {
    "entity_id": ("entity_id", "cow_id", "cowid", "unit_id", "asset_id"),
    "from_location_id": ("from_location_id", "from_location", "from_loc", "origin"),
    "from_location_type": ("from_location_type", "from_type", "from_loc_type"),
    "to_location_id": ("to_location_id", "to_location", "to_loc", "destination"),
    "to_location_type": ("to_location_type", "to_type", "to_loc_type"),
    "departure_time": ("departure_time", "moved_datetime", "moved_at", "departure"),
    "arrival_time": ("arrival_time", "reached_datetime", "reached_at", "arrival"),
    "movement_type": ("movement_type", "move_type", "type"),
    "region": ("region", "to_region"),
}

LOCATION_COLUMN_ALIASES = {
    "location_id": ("location_id", "location", "loc_id", "id"),
    "name": ("name", "location_name"),
    "type": ("type", "location_type", "loc_type"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lon", "lng"),
    "region": ("region",),
}

WAREHOUSE_TYPES = {"warehouse", "wh", "depot", "storage"}


@dataclass(frozen=True)
class MovementRecord:
    """One relocation of an entity, exactly as supplied by the caller."""

    entity_id: str
    from_location_id: str
    from_location_type: str
    to_location_id: str
    to_location_type: str
    departure_time: datetime | str | None
    arrival_time: datetime | str | None
    movement_type: str
    region: str


@dataclass(frozen=True)
class LocationRecord:
    """A site or warehouse in the location registry."""

    location_id: str
    name: str
    type: str
    latitude: float | None
    longitude: float | None
    region: str

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# ──────────────────────────────────────────────────────────────────────────
# Normalization helpers
# ──────────────────────────────────────────────────────────────────────────


def normalize_movement_type(raw: Any) -> MovementType:
    """
    Map free-text movement types onto the four-way tag.

    Accepts any casing and trailing words ("full move", "HALF"). Anything
    unrecognized maps to "Unknown" rather than being dropped.
    """
    if raw is None:
        return "Unknown"
    text = str(raw).strip().lower()
    if not text:
        return "Unknown"
    first = text.split()[0]
    if first == "full":
        return "Full"
    if first == "half":
        return "Half"
    if first in {"zero", "0"}:
        return "Zero"
    return "Unknown"


def is_warehouse_location(
    location_type: str | None,
    name: str | None = None,
    keywords: Iterable[str] = ("warehouse", "wh", "depot", "storage", "yard"),
) -> bool:
    """
    Decide whether a location is a warehouse.

    The declared type wins. When the type is blank or generic, fall back to
    whole-word keyword matching on the name ("Riyadh WH-2" → True,
    "White Sands" → False).
    """
    declared = (location_type or "").strip().lower()
    if declared in WAREHOUSE_TYPES or "warehouse" in declared:
        return True
    if declared and declared not in {"unknown", "other", "n/a"}:
        return False
    if not name:
        return False
    tokens = set(re.split(r"[^a-z0-9]+", name.lower()))
    return any(k.lower() in tokens for k in keywords)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp leniently. Returns None for missing or unparseable values.

    Bare numbers are refused: pandas would read them as epoch nanoseconds,
    turning spreadsheet serial dates into 1970 timestamps.
    """
    if value is None or isinstance(value, Number):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    ts = pd.to_datetime(value, errors="coerce")
    if ts is pd.NaT or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def _clean_float(value: Any) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    number = pd.to_numeric(value, errors="coerce")
    if pd.isna(number):
        return None
    return float(number)


def _pick(row: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    lowered = {str(k).strip().lower(): v for k, v in row.items()}
    for alias in aliases:
        if alias in lowered:
            return lowered[alias]
    return None


# ──────────────────────────────────────────────────────────────────────────
# Builders
# ──────────────────────────────────────────────────────────────────────────


def movement_from_mapping(row: Mapping[str, Any]) -> MovementRecord:
    """Build a MovementRecord from a dict-like row using tolerant column aliases."""
    values = {field: _pick(row, aliases) for field, aliases in MOVEMENT_COLUMN_ALIASES.items()}
    departure = values["departure_time"]
    arrival = values["arrival_time"]
    return MovementRecord(
        entity_id=_clean_str(values["entity_id"]),
        from_location_id=_clean_str(values["from_location_id"]),
        from_location_type=_clean_str(values["from_location_type"]),
        to_location_id=_clean_str(values["to_location_id"]),
        to_location_type=_clean_str(values["to_location_type"]),
        departure_time=None if departure is None or _clean_str(departure) == "" else departure,
        arrival_time=None if arrival is None or _clean_str(arrival) == "" else arrival,
        movement_type=_clean_str(values["movement_type"]),
        region=_clean_str(values["region"]),
    )


def location_from_mapping(row: Mapping[str, Any]) -> LocationRecord:
    """Build a LocationRecord from a dict-like row using tolerant column aliases."""
    values = {field: _pick(row, aliases) for field, aliases in LOCATION_COLUMN_ALIASES.items()}
    return LocationRecord(
        location_id=_clean_str(values["location_id"]),
        name=_clean_str(values["name"]),
        type=_clean_str(values["type"]),
        latitude=_clean_float(values["latitude"]),
        longitude=_clean_float(values["longitude"]),
        region=_clean_str(values["region"]),
    )


def movements_from_frame(df: pd.DataFrame) -> list[MovementRecord]:
    """Convert a movement DataFrame (one row per movement) into records."""
    return [movement_from_mapping(row) for row in df.to_dict("records")]


def locations_from_frame(df: pd.DataFrame) -> list[LocationRecord]:
    """Convert a location DataFrame into records."""
    return [location_from_mapping(row) for row in df.to_dict("records")]


def movements_to_frame(records: Iterable[MovementRecord]) -> pd.DataFrame:
    """Flatten records into a DataFrame with the canonical column names."""
    rows = [
        {
            "entity_id": r.entity_id,
            "from_location_id": r.from_location_id,
            "from_location_type": r.from_location_type,
            "to_location_id": r.to_location_id,
            "to_location_type": r.to_location_type,
            "departure_time": r.departure_time,
            "arrival_time": r.arrival_time,
            "movement_type": r.movement_type,
            "region": r.region,
        }
        for r in records
    ]
    return pd.DataFrame(rows, columns=list(MOVEMENT_COLUMN_ALIASES.keys()))


def locations_to_frame(locations: Iterable[LocationRecord]) -> pd.DataFrame:
    rows = [
        {
            "location_id": loc.location_id,
            "name": loc.name,
            "type": loc.type,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "region": loc.region,
        }
        for loc in locations
    ]
    return pd.DataFrame(rows, columns=list(LOCATION_COLUMN_ALIASES.keys()))


def location_index(locations: Iterable[LocationRecord]) -> dict[str, LocationRecord]:
    """Map location_id → record (last one wins on duplicate ids)."""
    return {loc.location_id: loc for loc in locations if loc.location_id}
