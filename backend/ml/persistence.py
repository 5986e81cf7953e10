"""
Model persistence — portable export blobs and versioned model directories.

export_model / import_model
    Wrap a model's serialized state in an envelope carrying name, version,
    kind and export time, so blobs can move between processes.

save_models / load_models
    Write a version directory:
        <artifact_dir>/<version>/classifier.joblib
        <artifact_dir>/<version>/regressor.joblib
        <artifact_dir>/<version>/clusterer.joblib
        <artifact_dir>/<version>/metadata.json   (human-readable)

Nothing here runs implicitly; only callers trigger disk writes.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any

import joblib
import structlog

from core.config import get_settings
from ml.models import MODEL_CLASSES, ModelFormatError, MovementModel, decode_blob
from ml.train import TrainedModels

logger = structlog.get_logger()

ENVELOPE_VERSION = 1

__all__ = ["ModelFormatError", "export_model", "import_model", "save_models", "load_models"]


def export_model(model: MovementModel) -> str:
    """Serialize a model and wrap it with its identifying metadata."""
    envelope = {
        "envelope_version": ENVELOPE_VERSION,
        "name": model.name,
        "version": model.version,
        "kind": model.kind,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "ready": model.is_ready,
        "blob": model.serialize(),
    }
    return json.dumps(envelope)


def import_model(exported: str) -> MovementModel:
    """Restore a model from export_model() output. Raises ModelFormatError."""
    try:
        envelope = json.loads(exported)
    except (TypeError, json.JSONDecodeError) as e:
        raise ModelFormatError(f"Export is not valid JSON: {e}") from e
    if not isinstance(envelope, dict) or "blob" not in envelope or "kind" not in envelope:
        raise ModelFormatError("Export envelope must contain 'kind' and 'blob'")
    if envelope.get("envelope_version") != ENVELOPE_VERSION:
        raise ModelFormatError(f"Unsupported envelope_version: {envelope.get('envelope_version')}")

    kind = envelope["kind"]
    if kind not in MODEL_CLASSES:
        raise ModelFormatError(f"Unknown model kind: {kind!r}")
    decode_blob(envelope["blob"], expected_kind=kind)
    model = MODEL_CLASSES[kind].deserialize(envelope["blob"])
    logger.info("persistence.imported", name=model.name, version=model.version, kind=kind, ready=model.is_ready)
    return model


def save_models(
    models: TrainedModels,
    version: str,
    artifact_dir: str | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> str:
    """
    Save the three trained models plus human-readable JSON metadata.

    Returns the version directory path.
    """
    artifact_dir = artifact_dir or get_settings().artifact_dir
    version_dir = os.path.join(artifact_dir, version)
    os.makedirs(version_dir, exist_ok=True)

    for kind, model in models.as_dict().items():
        joblib.dump(model.serialize(), os.path.join(version_dir, f"{kind}.joblib"))

    meta = {
        "version": version,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "models": {
            kind: {
                "name": model.name,
                "model_version": model.version,
                "ready": model.is_ready,
                "hyperparameters": model.hyperparameters,
                "metrics": model.metrics,
                "feature_names": list(model.feature_names),
            }
            for kind, model in models.as_dict().items()
        },
        **(extra_metadata or {}),
    }
    with open(os.path.join(version_dir, "metadata.json"), "w") as f:
        json.dump(meta, f, indent=2, default=str)

    logger.info("persistence.saved", version=version, path=version_dir)
    return version_dir


def load_models(version: str, artifact_dir: str | None = None) -> dict[str, Any]:
    """Load a saved version. Returns {"models": TrainedModels, "metadata": dict}."""
    artifact_dir = artifact_dir or get_settings().artifact_dir
    version_dir = os.path.join(artifact_dir, version)
    if not os.path.isdir(version_dir):
        raise FileNotFoundError(f"No saved models at {version_dir}")

    with open(os.path.join(version_dir, "metadata.json")) as f:
        metadata = json.load(f)

    restored = {}
    for kind, cls in MODEL_CLASSES.items():
        blob = joblib.load(os.path.join(version_dir, f"{kind}.joblib"))
        restored[kind] = cls.deserialize(blob)

    logger.info("persistence.loaded", version=version, path=version_dir)
    return {
        "models": TrainedModels(
            classifier=restored["classifier"],
            regressor=restored["regressor"],
            clusterer=restored["clusterer"],
            metrics={kind: m.metrics for kind, m in restored.items()},
        ),
        "metadata": metadata,
    }
