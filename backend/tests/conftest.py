"""
Test Configuration — synthetic fleets, a location registry and a fake clock.

Histories are built so each movement's idle gap is exact: arrival is
TRANSIT after departure, and the next departure is `gap` days after that
arrival. The last gap runs up to the returned reference time.
"""

from datetime import datetime, timedelta

import pytest

from fleet.records import LocationRecord, MovementRecord

START = datetime(2024, 1, 1, 8, 0)  # a Monday
TRANSIT = timedelta(hours=6)

E2E_GAPS = [5, 10, 15, 20, 25, 8, 12, 18, 22, 30]


class FakeClock:
    """Monotonic-style clock the tests advance by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def location_type(location_id: str) -> str:
    return "Warehouse" if location_id.startswith("WH-") else "Site"


def build_history(
    entity_id: str,
    gaps: list[float],
    route: list[str],
    start: datetime = START,
    movement_types: list[str] | None = None,
    region: str = "Central",
) -> tuple[list[MovementRecord], datetime]:
    """Chronological movements whose idle gaps equal `gaps`. Returns (records, reference_time)."""
    records = []
    departure = start
    for i, gap in enumerate(gaps):
        from_loc = route[i % len(route)]
        to_loc = route[(i + 1) % len(route)]
        arrival = departure + TRANSIT
        records.append(
            MovementRecord(
                entity_id=entity_id,
                from_location_id=from_loc,
                from_location_type=location_type(from_loc),
                to_location_id=to_loc,
                to_location_type=location_type(to_loc),
                departure_time=departure.isoformat(),
                arrival_time=arrival.isoformat(),
                movement_type=(movement_types or ["Full"] * len(gaps))[i],
                region=region,
            )
        )
        departure = arrival + timedelta(days=gap)
    return records, departure


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def locations():
    return [
        LocationRecord("WH-RUH", "Riyadh Central Warehouse", "Warehouse", 24.71, 46.67, "Central"),
        LocationRecord("WH-JED", "Jeddah WH", "Warehouse", 21.54, 39.17, "Western"),
        LocationRecord("SITE-A", "Al Olaya Tower", "Site", 24.69, 46.68, "Central"),
        LocationRecord("SITE-B", "Dammam Corniche", "Site", 26.43, 50.10, "Eastern"),
        LocationRecord("SITE-C", "Makkah Event Grounds", "Site", 21.42, 39.83, "Western"),
    ]


@pytest.fixture
def e2e_history():
    """One entity, ten movements alternating warehouse and site."""
    return build_history("COW-001", E2E_GAPS, ["WH-RUH", "SITE-A", "WH-RUH", "SITE-B"])


@pytest.fixture
def fleet_records():
    """Four entities with distinct rotation patterns, sharing one reference time."""
    histories = [
        build_history("COW-001", E2E_GAPS, ["WH-RUH", "SITE-A", "WH-RUH", "SITE-B"]),
        build_history("COW-002", [3, 4, 3, 5, 4, 3, 4], ["WH-JED", "SITE-C"], start=datetime(2024, 3, 4, 9)),
        build_history("COW-003", [40, 45, 50, 38], ["SITE-B", "WH-RUH", "SITE-A"], start=datetime(2024, 1, 15, 7)),
        build_history(
            "COW-004",
            [12, 14, 11, 13, 15, 12],
            ["WH-RUH", "SITE-A", "SITE-B"],
            start=datetime(2024, 2, 5, 10),
            movement_types=["Half", "Full", "Half", "Half", "Zero", "Full"],
        ),
    ]
    records = [r for recs, _ in histories for r in recs]
    reference_time = max(ref for _, ref in histories)
    return records, reference_time


@pytest.fixture
def fleet_dataset(fleet_records, locations):
    from ml.dataprep import prepare_dataset

    records, reference_time = fleet_records
    return prepare_dataset(records, locations, reference_time=reference_time)
