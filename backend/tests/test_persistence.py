"""
Unit Tests — model export/import envelopes and versioned save/load.
"""

import json
import os

import pytest

from ml.models import ClusteringModel, NextLocationModel, OptimalStayModel
from ml.persistence import ModelFormatError, export_model, import_model, load_models, save_models
from ml.train import train_models


@pytest.fixture
def trained(fleet_dataset):
    return train_models(fleet_dataset, clusterer_params={"k": 2})


class TestExportImport:
    @pytest.mark.parametrize("kind", ["classifier", "regressor", "clusterer"])
    def test_round_trip_preserves_predictions(self, trained, fleet_dataset, kind):
        model = trained.as_dict()[kind]
        restored = import_model(export_model(model))

        assert type(restored) is type(model)
        assert restored.version == model.version
        for sample in fleet_dataset.clustering:
            assert restored.predict(sample.vector) == model.predict(sample.vector)

    def test_envelope_fields(self, trained):
        envelope = json.loads(export_model(trained.classifier))

        assert envelope["kind"] == "classifier"
        assert envelope["name"] == "next_location_knn"
        assert envelope["ready"] is True
        assert envelope["exported_at"]

    def test_untrained_export_imports_untrained(self):
        restored = import_model(export_model(OptimalStayModel()))
        assert not restored.is_ready

    @pytest.mark.parametrize(
        "exported",
        [
            "{broken",
            json.dumps({"kind": "classifier"}),
            json.dumps({"envelope_version": 2, "kind": "classifier", "blob": "{}"}),
            json.dumps({"envelope_version": 1, "kind": "forecaster", "blob": "{}"}),
        ],
    )
    def test_malformed_exports_raise(self, exported):
        with pytest.raises(ModelFormatError):
            import_model(exported)

    def test_kind_must_match_blob(self):
        envelope = json.loads(export_model(ClusteringModel()))
        envelope["kind"] = "classifier"
        with pytest.raises(ModelFormatError):
            import_model(json.dumps(envelope))


class TestSaveLoad:
    def test_writes_version_directory(self, trained, tmp_path):
        path = save_models(trained, "v1", artifact_dir=str(tmp_path), extra_metadata={"dataset": "fleet"})

        assert sorted(os.listdir(path)) == [
            "classifier.joblib",
            "clusterer.joblib",
            "metadata.json",
            "regressor.joblib",
        ]
        with open(os.path.join(path, "metadata.json")) as f:
            meta = json.load(f)
        assert meta["version"] == "v1"
        assert meta["dataset"] == "fleet"
        assert meta["models"]["classifier"]["hyperparameters"] == {"k": 5}
        assert len(meta["models"]["regressor"]["feature_names"]) == 17

    def test_load_restores_working_models(self, trained, fleet_dataset, tmp_path):
        save_models(trained, "v2", artifact_dir=str(tmp_path))
        loaded = load_models("v2", artifact_dir=str(tmp_path))

        models = loaded["models"]
        assert loaded["metadata"]["version"] == "v2"
        assert models.versions == trained.versions
        for sample in fleet_dataset.clustering:
            v = sample.vector
            assert models.classifier.predict(v) == trained.classifier.predict(v)
            assert models.regressor.predict(v) == trained.regressor.predict(v)
            assert models.clusterer.predict(v) == trained.clusterer.predict(v)

    def test_missing_version_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_models("nope", artifact_dir=str(tmp_path))

    def test_saving_untrained_models(self, tmp_path):
        from ml.train import TrainedModels

        empty = TrainedModels(NextLocationModel(), OptimalStayModel(), ClusteringModel())
        save_models(empty, "empty", artifact_dir=str(tmp_path))
        models = load_models("empty", artifact_dir=str(tmp_path))["models"]

        assert not models.classifier.is_ready
        assert not models.regressor.is_ready
        assert not models.clusterer.is_ready
