"""
Unit Tests — fleet records (normalization, warehouse detection, builders).
"""

from datetime import datetime

import pandas as pd
import pytest

from fleet.records import (
    is_warehouse_location,
    location_index,
    locations_from_frame,
    movements_from_frame,
    movements_to_frame,
    normalize_movement_type,
    parse_timestamp,
)


class TestNormalizeMovementType:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Full", "Full"),
            ("full move", "Full"),
            ("HALF", "Half"),
            ("zero", "Zero"),
            ("relocation", "Unknown"),
            ("", "Unknown"),
            (None, "Unknown"),
        ],
    )
    def test_maps_free_text_to_four_tags(self, raw, expected):
        assert normalize_movement_type(raw) == expected


class TestWarehouseDetection:
    def test_declared_type_wins(self):
        assert is_warehouse_location("Warehouse", "Olaya Tower") is True
        assert is_warehouse_location("Site", "Main Depot") is False

    def test_name_keywords_used_when_type_blank(self):
        assert is_warehouse_location("", "Riyadh WH-2") is True
        assert is_warehouse_location(None, "North Storage Yard") is True

    def test_keyword_must_be_a_whole_word(self):
        assert is_warehouse_location("", "White Sands") is False
        assert is_warehouse_location("", None) is False


class TestParseTimestamp:
    def test_iso_string(self):
        assert parse_timestamp("2024-01-05T10:00:00") == datetime(2024, 1, 5, 10, 0)

    def test_timezone_converted_to_naive_utc(self):
        assert parse_timestamp("2024-01-05T10:00:00+03:00") == datetime(2024, 1, 5, 7, 0)

    def test_datetime_passthrough(self):
        assert parse_timestamp(datetime(2024, 2, 1)) == datetime(2024, 2, 1)

    @pytest.mark.parametrize("value", [None, "", "   ", "not a date", float("nan")])
    def test_unparseable_values_return_none(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize("value", [12345, 45292.0, 1704096000])
    def test_bare_numbers_are_not_epoch_timestamps(self, value):
        assert parse_timestamp(value) is None


class TestBuilders:
    def test_movement_aliases_are_recognized(self):
        df = pd.DataFrame(
            [
                {
                    "COW_ID": "COW-9",
                    "from_location": "WH-RUH",
                    "to_location": "SITE-A",
                    "Moved_DateTime": "2024-01-01 08:00",
                    "Reached_DateTime": "2024-01-01 14:00",
                    "movement_type": "Half",
                    "region": "Central",
                }
            ]
        )
        [record] = movements_from_frame(df)

        assert record.entity_id == "COW-9"
        assert record.from_location_id == "WH-RUH"
        assert record.to_location_id == "SITE-A"
        assert record.departure_time == "2024-01-01 08:00"
        assert record.movement_type == "Half"
        assert record.from_location_type == ""

    def test_missing_values_become_blank_or_none(self):
        df = pd.DataFrame([{"entity_id": "COW-1", "to_location_id": None, "departure_time": float("nan")}])
        [record] = movements_from_frame(df)

        assert record.to_location_id == ""
        assert record.departure_time is None
        assert record.arrival_time is None

    def test_locations_parse_coordinates(self):
        df = pd.DataFrame(
            [
                {"location_id": "A", "name": "Alpha", "type": "Site", "lat": "24.5", "lon": 46.1, "region": "C"},
                {"location_id": "B", "name": "Beta", "type": "Warehouse", "lat": "", "lon": None, "region": "C"},
            ]
        )
        a, b = locations_from_frame(df)

        assert a.latitude == 24.5 and a.longitude == 46.1 and a.has_coordinates
        assert b.latitude is None and not b.has_coordinates

    def test_frame_round_trip_keeps_canonical_columns(self, e2e_history):
        records, _ = e2e_history
        df = movements_to_frame(records)

        assert list(df.columns)[:2] == ["entity_id", "from_location_id"]
        assert movements_from_frame(df) == records

    def test_location_index(self, locations):
        index = location_index(locations)
        assert set(index) == {"WH-RUH", "WH-JED", "SITE-A", "SITE-B", "SITE-C"}
