"""Canonical metric definitions used by model evaluation, cross-validation and tuning."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
from sklearn.metrics import confusion_matrix, precision_recall_fscore_support

DEFAULT_TOP_K = (1, 3, 5)


def _to_series(values: Any) -> pd.Series:
    series = pd.Series(values, dtype="object").reset_index(drop=True)
    return pd.to_numeric(series, errors="coerce").fillna(0.0).astype(float)


# ──────────────────────────────────────────────────────────────────────────
# Regression
# ──────────────────────────────────────────────────────────────────────────


def mae(y_true: Any, y_pred: Any) -> float:
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    if actual.empty:
        return 0.0
    return float(np.abs(pred - actual).mean())


def mse(y_true: Any, y_pred: Any) -> float:
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    if actual.empty:
        return 0.0
    return float(((pred - actual) ** 2).mean())


def rmse(y_true: Any, y_pred: Any) -> float:
    return float(np.sqrt(mse(y_true, y_pred)))


def r2(y_true: Any, y_pred: Any) -> float:
    """Coefficient of determination; 0.0 when the target is constant or empty."""
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    if actual.empty:
        return 0.0
    ss_tot = float(((actual - actual.mean()) ** 2).sum())
    if ss_tot == 0:
        return 0.0
    ss_res = float(((actual - pred) ** 2).sum())
    return 1.0 - ss_res / ss_tot


def mape_nonzero(y_true: Any, y_pred: Any) -> float:
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    mask = actual > 0
    if int(mask.sum()) == 0:
        return 0.0
    return float((np.abs(pred[mask] - actual[mask]) / actual[mask]).mean())


def within_tolerance_rate(y_true: Any, y_pred: Any, tolerance: float = 0.1) -> float:
    """Share of predictions within ±tolerance (relative) of a nonzero actual."""
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    mask = actual > 0
    if int(mask.sum()) == 0:
        return 0.0
    return float((np.abs(pred[mask] - actual[mask]) <= tolerance * actual[mask]).mean())


def regression_metrics(y_true: Any, y_pred: Any) -> dict[str, float]:
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    residuals = actual - pred
    return {
        "mae": mae(actual, pred),
        "mse": mse(actual, pred),
        "rmse": rmse(actual, pred),
        "r2": r2(actual, pred),
        "mape": mape_nonzero(actual, pred),
        "residual_mean": float(residuals.mean()) if len(residuals) else 0.0,
        "residual_std": float(residuals.std(ddof=0)) if len(residuals) else 0.0,
        "within_10pct": within_tolerance_rate(actual, pred, 0.1),
        "n_samples": int(len(actual)),
    }


# ──────────────────────────────────────────────────────────────────────────
# Classification
# ──────────────────────────────────────────────────────────────────────────


def top_k_accuracy(y_true: Sequence[str], ranked: Sequence[Sequence[str]], k: int) -> float:
    """Share of samples whose true label is among the first k ranked candidates."""
    if not y_true:
        return 0.0
    hits = sum(1 for label, candidates in zip(y_true, ranked) if label in list(candidates)[:k])
    return hits / len(y_true)


def classification_metrics(
    y_true: Sequence[str],
    y_pred: Sequence[str],
    ranked: Sequence[Sequence[str]] | None = None,
    top_k: Sequence[int] = DEFAULT_TOP_K,
) -> dict[str, Any]:
    """
    Accuracy, per-class precision/recall/F1, macro-F1, confusion matrix and top-k accuracy.

    ranked holds each sample's full candidate ranking; when omitted the single
    prediction stands in for the ranking.
    """
    y_true = [str(v) for v in y_true]
    y_pred = [str(v) for v in y_pred]
    if not y_true:
        return {
            "accuracy": 0.0,
            "per_class": {},
            "macro_f1": 0.0,
            "confusion_matrix": {"labels": [], "matrix": []},
            "top_k_accuracy": {int(k): 0.0 for k in top_k},
            "n_samples": 0,
        }

    labels = sorted(set(y_true) | set(y_pred))
    precision, recall, f1, support = precision_recall_fscore_support(
        y_true, y_pred, labels=labels, zero_division=0
    )
    matrix = confusion_matrix(y_true, y_pred, labels=labels)
    per_class = {
        label: {
            "precision": float(precision[i]),
            "recall": float(recall[i]),
            "f1": float(f1[i]),
            "support": int(support[i]),
        }
        for i, label in enumerate(labels)
    }
    # Macro-F1 over classes that actually occur in y_true
    present = [per_class[label]["f1"] for label in labels if per_class[label]["support"] > 0]
    ranked = ranked if ranked is not None else [[p] for p in y_pred]

    return {
        "accuracy": float(np.mean([t == p for t, p in zip(y_true, y_pred)])),
        "per_class": per_class,
        "macro_f1": float(np.mean(present)) if present else 0.0,
        "confusion_matrix": {"labels": labels, "matrix": matrix.tolist()},
        "top_k_accuracy": {int(k): top_k_accuracy(y_true, ranked, int(k)) for k in top_k},
        "n_samples": len(y_true),
    }


# ──────────────────────────────────────────────────────────────────────────
# Clustering
# ──────────────────────────────────────────────────────────────────────────


def _distances_to_centroids(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    return np.linalg.norm(X[:, None, :] - centroids[None, :, :], axis=2)


def centroid_silhouette(X: Any, labels: Sequence[int], centroids: Any) -> float:
    """
    Silhouette-style score against centroids.

    For each sample: (nearest-other-centroid distance − own-centroid distance)
    divided by the larger of the two; averaged over samples. 0.0 with fewer
    than two clusters or no samples.
    """
    X = np.asarray(X, dtype=float)
    centroids = np.asarray(centroids, dtype=float)
    labels = np.asarray(labels, dtype=int)
    if X.size == 0 or len(centroids) < 2:
        return 0.0

    dist = _distances_to_centroids(X, centroids)
    own = dist[np.arange(len(X)), labels]
    other = dist.copy()
    other[np.arange(len(X)), labels] = np.inf
    nearest_other = other.min(axis=1)
    denom = np.maximum(own, nearest_other)
    scores = np.divide(nearest_other - own, denom, out=np.zeros_like(own), where=denom > 0)
    return float(scores.mean())


def clustering_metrics(X: Any, labels: Sequence[int], centroids: Any) -> dict[str, Any]:
    X = np.asarray(X, dtype=float)
    centroids = np.asarray(centroids, dtype=float)
    labels = np.asarray(labels, dtype=int)
    k = len(centroids)
    if X.size == 0 or k == 0:
        return {"silhouette": 0.0, "inertia": 0.0, "cluster_sizes": {}, "cohesion": {}, "n_samples": 0}

    own = np.linalg.norm(X - centroids[labels], axis=1)
    sizes = {int(c): int((labels == c).sum()) for c in range(k)}
    cohesion = {int(c): float(own[labels == c].mean()) if sizes[c] else 0.0 for c in range(k)}
    return {
        "silhouette": centroid_silhouette(X, labels, centroids),
        "inertia": float((own**2).sum()),
        "cluster_sizes": sizes,
        "cohesion": cohesion,
        "n_samples": int(len(X)),
    }
