"""
Unit Tests — data preparation (per-movement features, aggregates, datasets).
"""

from collections import Counter
from dataclasses import replace
from datetime import datetime

import numpy as np
import pytest

from ml.dataprep import (
    aggregate_entity_features,
    build_training_dataset,
    extract_movement_features,
    latest_entity_states,
    movement_consistency,
    prepare_dataset,
    seasonal_months,
)
from ml.models import OptimalStayModel
from conftest import E2E_GAPS, build_history


class TestEndToEndScenario:
    """Ten movements for one entity with known idle gaps."""

    def test_idle_days_follow_next_departure(self, e2e_history, locations):
        records, ref = e2e_history
        features = extract_movement_features(records, locations, reference_time=ref)

        assert len(features) == 10
        assert [round(f.idle_days, 6) for f in features] == E2E_GAPS

    def test_aggregate_mean_idle_days(self, e2e_history, locations):
        records, ref = e2e_history
        features = extract_movement_features(records, locations, reference_time=ref)
        aggregates = aggregate_entity_features(features, reference_time=ref)

        agg = aggregates["COW-001"]
        assert agg.avg_idle_days == pytest.approx(16.5)
        assert agg.std_idle_days == pytest.approx(float(np.std(E2E_GAPS)))
        assert agg.total_movements == 10

    def test_sample_counts(self, e2e_history, locations):
        records, ref = e2e_history
        dataset = prepare_dataset(records, locations, reference_time=ref)

        assert len(dataset.classification) == 9
        assert len(dataset.regression) == 9
        assert len(dataset.clustering) == 1
        assert [s.label for s in dataset.regression] == pytest.approx(E2E_GAPS[:9])

    def test_stay_model_on_single_entity(self, e2e_history, locations):
        records, ref = e2e_history
        dataset = prepare_dataset(records, locations, reference_time=ref)

        model = OptimalStayModel()
        model.train(dataset.regression)
        prediction = model.predict(dataset.clustering[0].vector)

        assert 1.0 <= prediction.predicted_days <= 90.0
        assert prediction.rationale


class TestExtractMovementFeatures:
    def test_calendar_fields_use_departure(self, e2e_history, locations):
        records, ref = e2e_history
        first = extract_movement_features(records, locations, reference_time=ref)[0]

        assert first.day_of_week == 0  # 2024-01-01 is a Monday
        assert first.month == 1
        assert first.quarter == 1
        assert first.is_seasonal is True  # January is in the default peak window

    def test_warehouse_flag_describes_destination(self, e2e_history, locations):
        records, ref = e2e_history
        features = extract_movement_features(records, locations, reference_time=ref)

        assert features[0].to_location_id == "SITE-A" and features[0].is_warehouse is False
        assert features[1].to_location_id == "WH-RUH" and features[1].is_warehouse is True
        assert features[1].from_is_warehouse is False

    def test_registry_type_used_when_record_type_blank(self, locations):
        records, ref = build_history("COW-X", [5, 5], ["SITE-A", "WH-JED"])
        records = [replace(r, to_location_type="", from_location_type="") for r in records]
        features = extract_movement_features(records, locations, reference_time=ref)

        assert features[0].to_location_type == "Warehouse"
        assert features[0].is_warehouse is True

    def test_consecutive_same_type_resets_on_change(self):
        types = ["Full", "Full", "Half", "half move", "HALF", "Full"]
        records, ref = build_history("COW-T", [3] * 6, ["SITE-A", "SITE-B"], movement_types=types)
        features = extract_movement_features(records, reference_time=ref)

        assert [f.consecutive_same_type for f in features] == [1, 2, 1, 2, 3, 1]
        assert features[3].movement_type == "Half"

    def test_unknown_movement_type_is_kept(self):
        records, ref = build_history("COW-U", [3, 3], ["SITE-A", "SITE-B"], movement_types=["teleport", "Full"])
        features = extract_movement_features(records, reference_time=ref)

        assert len(features) == 2
        assert features[0].movement_type == "Unknown"

    def test_unusable_rows_are_skipped_and_counted(self, e2e_history, locations):
        records, ref = e2e_history
        broken = [
            replace(records[0], entity_id=""),
            replace(records[1], from_location_id="", to_location_id=""),
            replace(records[2], departure_time="garbage", arrival_time=None),
        ]
        dataset = prepare_dataset(records + broken, locations, reference_time=ref)

        assert dataset.metadata.total_records == 13
        assert dataset.metadata.valid_movements == 10
        assert dataset.metadata.skipped_records == 3

    def test_numeric_timestamp_cannot_rescue_a_broken_row(self, e2e_history, locations):
        records, ref = e2e_history
        clean = prepare_dataset(records, locations, reference_time=ref)
        broken = replace(records[2], departure_time="garbage", arrival_time=12345)
        dataset = prepare_dataset(records + [broken], locations, reference_time=ref)

        assert dataset.metadata.valid_movements == 10
        assert dataset.metadata.skipped_records == 1
        assert dataset.metadata.date_range_start == clean.metadata.date_range_start

    def test_single_timestamp_is_enough(self):
        records, ref = build_history("COW-S", [4, 4], ["SITE-A", "SITE-B"])
        records[0] = replace(records[0], departure_time=None)
        features = extract_movement_features(records, reference_time=ref)

        assert len(features) == 2
        assert features[0].departure_time == features[0].arrival_time

    def test_overlapping_records_clamp_idle_to_zero(self):
        records, ref = build_history("COW-O", [5, 5], ["SITE-A", "SITE-B"])
        # Second departure before first arrival
        records[0] = replace(records[0], arrival_time="2024-01-20T00:00:00")
        features = extract_movement_features(records, reference_time=ref)

        assert features[0].idle_days == 0.0

    def test_empty_input(self):
        assert extract_movement_features([], reference_time=datetime(2024, 1, 1)) == []

    def test_empty_peak_window_disables_seasonal_flag(self, e2e_history):
        records, ref = e2e_history

        assert any(f.is_seasonal for f in extract_movement_features(records, reference_time=ref))
        assert not any(
            f.is_seasonal for f in extract_movement_features(records, reference_time=ref, peak_season_months=[])
        )

    def test_empty_keyword_list_disables_name_heuristic(self):
        records, ref = build_history("COW-K", [3, 3], ["SITE-A", "DEPOT-7"])
        records = [replace(r, from_location_type="", to_location_type="") for r in records]

        default = extract_movement_features(records, reference_time=ref)
        disabled = extract_movement_features(records, reference_time=ref, warehouse_keywords=[])

        assert default[0].is_warehouse
        assert not disabled[0].is_warehouse


class TestAggregates:
    def test_recency_uses_latest_departure(self, e2e_history):
        records, ref = e2e_history
        features = extract_movement_features(records, reference_time=ref)
        agg = aggregate_entity_features(features, reference_time=ref)["COW-001"]

        # 30 idle days plus the 6 hour transit of the last movement
        assert agg.days_since_last_movement == pytest.approx(30.25)

    def test_warehouse_and_offsite_split(self, e2e_history, locations):
        records, ref = e2e_history
        features = extract_movement_features(records, locations, reference_time=ref)
        agg = aggregate_entity_features(features, reference_time=ref)["COW-001"]

        wh = [g for i, g in enumerate(E2E_GAPS) if i % 2 == 1]
        off = [g for i, g in enumerate(E2E_GAPS) if i % 2 == 0]
        assert agg.avg_idle_days_warehouse == pytest.approx(np.mean(wh))
        assert agg.avg_idle_days_offsite == pytest.approx(np.mean(off))
        assert agg.total_stay_days_warehouse == pytest.approx(sum(wh))
        assert agg.most_common_warehouse == "WH-RUH"
        assert agg.most_common_to_location == "WH-RUH"

    def test_type_distribution_sums_to_one(self, fleet_dataset):
        agg = fleet_dataset.aggregates["COW-004"]
        assert sum(agg.movement_type_distribution.values()) == pytest.approx(1.0)
        assert agg.movement_type_distribution["Half"] == pytest.approx(3 / 6)

    def test_region_frequency(self, fleet_dataset):
        assert fleet_dataset.aggregates["COW-002"].region_frequency == {"Central": 7}


class TestConsistencyAndSeasonality:
    def test_regular_gaps_score_one(self):
        assert movement_consistency([10, 10, 10]) == 1.0

    def test_too_few_gaps_score_zero(self):
        assert movement_consistency([5]) == 0.0

    def test_zero_mean_scores_zero(self):
        assert movement_consistency([0, 0]) == 0.0

    def test_irregular_gaps_use_inverse_cv(self):
        gaps = [1, 1, 28]
        expected = np.mean(gaps) / np.std(gaps)
        assert movement_consistency(gaps) == pytest.approx(expected)
        assert 0.0 < movement_consistency(gaps) < 1.0

    def test_peak_months(self):
        peak, off_peak = seasonal_months([1, 1, 1, 1, 1, 1, 2, 3])
        assert peak == [1]
        assert off_peak == list(range(2, 13))

    def test_uniform_months_have_no_peak(self):
        peak, _ = seasonal_months([1, 2, 3, 4])
        assert peak == []

    def test_multiplier_is_configurable(self):
        peak, _ = seasonal_months([1, 1, 2], multiplier=1.1)
        assert peak == [1]


class TestTrainingDataset:
    def test_samples_per_entity_equal_movements_minus_one(self, fleet_records, fleet_dataset):
        records, _ = fleet_records
        movements = Counter(r.entity_id for r in records)
        samples = Counter(s.vector.entity_id for s in fleet_dataset.classification)
        regression = Counter(s.vector.entity_id for s in fleet_dataset.regression)

        for entity_id, count in movements.items():
            assert samples[entity_id] == count - 1
            assert regression[entity_id] == count - 1

    def test_classification_label_is_next_destination(self, e2e_history, locations):
        records, ref = e2e_history
        features = extract_movement_features(records, locations, reference_time=ref)
        dataset = build_training_dataset(features, aggregate_entity_features(features, reference_time=ref))

        labels = [s.label for s in dataset.classification]
        assert labels == [f.to_location_id for f in features[1:]]
        assert dataset.classification[0].next_is_warehouse is True

    def test_one_clustering_sample_per_entity(self, fleet_dataset):
        ids = [s.entity_id for s in fleet_dataset.clustering]
        assert sorted(ids) == ["COW-001", "COW-002", "COW-003", "COW-004"]
        sample = next(s for s in fleet_dataset.clustering if s.entity_id == "COW-003")
        assert len(sample.history) == 4
        assert sample.aggregates.entity_id == "COW-003"

    def test_metadata(self, fleet_dataset):
        meta = fleet_dataset.metadata
        assert meta.unique_entities == 4
        assert meta.unique_locations == 5
        assert meta.quality_score == pytest.approx(1.0)
        assert meta.date_range_start == datetime(2024, 1, 1, 8, 0)
        assert meta.classification_samples == len(fleet_dataset.classification)

    def test_feature_names_are_shared(self, fleet_dataset):
        names = fleet_dataset.feature_names
        for sample in fleet_dataset.classification + fleet_dataset.regression + fleet_dataset.clustering:
            assert list(sample.vector.feature_names) == names


class TestLatestEntityStates:
    def test_one_state_per_entity(self, e2e_history, locations):
        records, ref = e2e_history
        features = extract_movement_features(records, locations, reference_time=ref)
        aggregates = aggregate_entity_features(features, reference_time=ref)
        [state] = latest_entity_states(features, aggregates)

        assert state.entity_id == "COW-001"
        assert state.current_idle_days == pytest.approx(30.0)
        assert state.current_location == features[-1].to_location_id
        assert state.vector.metadata["current_idle_days"] == pytest.approx(30.0)
