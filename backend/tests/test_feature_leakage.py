"""
Leakage checks — the stay-duration target must not appear in its own inputs.

A regression sample's label is the idle time of a completed stay. If that
value were also the sample's current_idle_days feature the model would
learn an identity. Classification samples keep the real idle time since
the next destination is a different quantity.
"""

import pytest


def test_regression_vectors_mask_current_idle(fleet_dataset):
    for sample in fleet_dataset.regression:
        agg = fleet_dataset.aggregates[sample.vector.entity_id]
        assert sample.vector.value("current_idle_days") == pytest.approx(agg.avg_idle_days)
        assert sample.vector.value("idle_days_vs_average") == 1.0


def test_regression_label_is_not_a_feature(e2e_history, locations):
    from ml.dataprep import prepare_dataset

    records, ref = e2e_history
    dataset = prepare_dataset(records, locations, reference_time=ref)

    for sample in dataset.regression:
        idle_slot = sample.vector.value("current_idle_days")
        assert idle_slot == pytest.approx(16.5)
        # Labels vary (5..25 days) while the masked slot stays constant
        assert sample.label != pytest.approx(idle_slot)


def test_classification_vectors_keep_real_idle(fleet_dataset):
    regression_idle = {
        (s.vector.entity_id, s.vector.timestamp): s.label for s in fleet_dataset.regression
    }
    for sample in fleet_dataset.classification:
        key = (sample.vector.entity_id, sample.vector.timestamp)
        assert sample.vector.value("current_idle_days") == pytest.approx(regression_idle[key])


def test_masked_vector_metadata_still_reports_actual_idle(fleet_dataset):
    sample = fleet_dataset.regression[0]
    assert sample.vector.metadata["current_idle_days"] == pytest.approx(sample.label)
