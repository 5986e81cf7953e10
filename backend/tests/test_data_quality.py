"""
Unit Tests — data quality scoring (completeness, consistency, validity, accuracy).
"""

from dataclasses import replace

import pytest

from fleet.records import LocationRecord
from ml.quality import assess_data_quality, classify_severity


def test_clean_dataset_scores_one(e2e_history, locations):
    records, _ = e2e_history
    report = assess_data_quality(records, locations)

    assert report.overall_score == pytest.approx(1.0)
    assert report.completeness == report.consistency == report.validity == report.accuracy == 1.0
    assert report.issues == []
    assert report.total_records == 10


def test_missing_fields_drop_completeness_proportionally(e2e_history, locations):
    records, _ = e2e_history
    damaged = [replace(r, to_location_id="") if i % 2 == 0 else r for i, r in enumerate(records)]
    report = assess_data_quality(damaged, locations)

    assert report.completeness == pytest.approx(0.5)
    [issue] = [i for i in report.issues if i.category == "completeness"]
    assert issue.severity == "critical"
    assert issue.affected_records == 5
    assert issue.remediation


def test_empty_input_yields_all_zero_report():
    report = assess_data_quality([])

    assert report.overall_score == 0.0
    assert report.completeness == report.consistency == report.validity == report.accuracy == 0.0
    assert report.total_records == 0


def test_unresolved_locations_lower_consistency(e2e_history, locations):
    records, _ = e2e_history
    registry = [loc for loc in locations if loc.location_id != "SITE-B"]
    report = assess_data_quality(records, registry)

    # SITE-B appears as a destination twice and as an origin twice among 20 references
    assert report.consistency == pytest.approx(16 / 20)
    [issue] = [i for i in report.issues if i.category == "consistency"]
    assert issue.severity == "warning"
    assert issue.affected_records == 4
    assert "SITE-B" in issue.message


def test_missing_registry_skips_consistency_with_info(e2e_history):
    records, _ = e2e_history
    report = assess_data_quality(records)

    assert report.consistency == 1.0
    [issue] = report.issues
    assert issue.category == "consistency"
    assert issue.severity == "info"


def test_non_chronological_timestamps_lower_validity(e2e_history, locations):
    records, _ = e2e_history
    damaged = list(records)
    damaged[0] = replace(records[0], arrival_time="2023-12-31T00:00:00")
    damaged[1] = replace(records[1], departure_time="yesterday-ish")
    report = assess_data_quality(damaged, locations)

    assert report.validity == pytest.approx(0.8)
    [issue] = [i for i in report.issues if i.category == "validity"]
    assert issue.affected_records == 2
    assert "1 unparseable" in issue.message


def test_out_of_region_coordinates_lower_accuracy(e2e_history, locations):
    records, _ = e2e_history
    registry = locations + [LocationRecord("SITE-Z", "Remote", "Site", 51.5, -0.12, "Abroad")]
    report = assess_data_quality(records, registry)

    assert report.accuracy == pytest.approx(5 / 6)
    assert any(i.category == "accuracy" for i in report.issues)


def test_custom_bounding_box(e2e_history, locations):
    records, _ = e2e_history
    report = assess_data_quality(records, locations, bbox=(0.0, 1.0, 0.0, 1.0))
    assert report.accuracy == 0.0


def test_overall_is_mean_of_categories(e2e_history, locations):
    records, _ = e2e_history
    damaged = [replace(r, entity_id="") if i < 2 else r for i, r in enumerate(records)]
    report = assess_data_quality(damaged, locations)

    expected = (report.completeness + report.consistency + report.validity + report.accuracy) / 4
    assert report.overall_score == pytest.approx(expected)
    assert report.to_dict()["completeness"] == pytest.approx(0.8)


@pytest.mark.parametrize("score, severity", [(0.5, "critical"), (0.8, "warning"), (0.97, "info")])
def test_severity_thresholds(score, severity):
    assert classify_severity(score) == severity
