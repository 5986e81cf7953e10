"""
ML Training Pipeline — cross-validation, grid tuning and learning curves.

Scores (higher is better):
  - classifier  → accuracy
  - regressor   → R² (0 when the target is constant)
  - clusterer   → centroid silhouette

Long runs accept a CancellationToken, checked between folds and between
grid combinations. A cancelled run returns everything finished so far
with cancelled=True instead of discarding it.

The three model types share no data, so train_models() and
tune_hyperparameters() can fan out over worker threads.
"""

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import structlog
from sklearn.model_selection import KFold, ParameterGrid

from core.config import get_settings
from ml.dataset import TrainingDataset
from ml.models import SCORE_METRICS, ClusteringModel, MovementModel, NextLocationModel, OptimalStayModel

logger = structlog.get_logger()

ModelFactory = Callable[..., MovementModel]


# ──────────────────────────────────────────────────────────────────────────
# Cancellation
# ──────────────────────────────────────────────────────────────────────────


class CancellationToken:
    """Cooperative cancel flag with an optional deadline on an injectable clock."""

    def __init__(self, timeout_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self._deadline = None if timeout_seconds is None else clock() + timeout_seconds

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._event.set()
            return True
        return False


def _is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled


# ──────────────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class CrossValidationResult:
    best_model: MovementModel | None
    best_score: float
    fold_scores: list[float]
    fold_metrics: list[dict[str, Any]]
    cancelled: bool = False

    @property
    def folds_completed(self) -> int:
        return len(self.fold_scores)

    @property
    def mean_score(self) -> float:
        return float(np.mean(self.fold_scores)) if self.fold_scores else 0.0

    @property
    def std_score(self) -> float:
        return float(np.std(self.fold_scores)) if self.fold_scores else 0.0


@dataclass
class TrialResult:
    params: dict[str, Any]
    mean_score: float
    std_score: float
    fold_scores: list[float]


@dataclass
class TuningResult:
    best_params: dict[str, Any] | None
    best_score: float
    trials: list[TrialResult] = field(default_factory=list)  # ranked best → worst
    cancelled: bool = False


@dataclass
class LearningCurvePoint:
    fraction: float
    n_train: int
    n_validation: int
    train_score: float
    validation_score: float

    @property
    def gap(self) -> float:
        return self.train_score - self.validation_score


@dataclass
class LearningCurveResult:
    points: list[LearningCurvePoint]
    overfitting: bool
    threshold: float

    @property
    def final_gap(self) -> float:
        return self.points[-1].gap if self.points else 0.0


@dataclass
class TrainedModels:
    classifier: NextLocationModel
    regressor: OptimalStayModel
    clusterer: ClusteringModel
    metrics: dict[str, dict[str, Any]] = field(default_factory=dict)

    def as_dict(self) -> dict[str, MovementModel]:
        return {"classifier": self.classifier, "regressor": self.regressor, "clusterer": self.clusterer}

    @property
    def versions(self) -> dict[str, str]:
        return {m.name: m.version for m in self.as_dict().values()}


# ──────────────────────────────────────────────────────────────────────────
# Cross-validation
# ──────────────────────────────────────────────────────────────────────────


def cross_validate(
    model_factory: ModelFactory,
    samples: Sequence[Any],
    n_folds: int | None = None,
    params: dict[str, Any] | None = None,
    random_state: int = 42,
    cancel_token: CancellationToken | None = None,
) -> CrossValidationResult:
    """
    K-fold cross-validation.

    Returns the model with the best held-out score plus every fold's score
    and full metrics, so callers can inspect variance and not just the mean.
    """
    n_folds = get_settings().cv_folds if n_folds is None else n_folds
    params = params or {}
    samples = list(samples)

    if len(samples) < 2:
        logger.warning("train.cv_too_few_samples", samples=len(samples), folds=n_folds)
        model = model_factory(**params)
        model.train(samples)
        return CrossValidationResult(best_model=model, best_score=0.0, fold_scores=[], fold_metrics=[])

    splits = min(n_folds, len(samples))
    kf = KFold(n_splits=splits, shuffle=True, random_state=random_state)

    best_model, best_score = None, float("-inf")
    fold_scores: list[float] = []
    fold_metrics: list[dict[str, Any]] = []
    cancelled = False

    for fold, (train_idx, test_idx) in enumerate(kf.split(np.arange(len(samples)))):
        if _is_cancelled(cancel_token):
            cancelled = True
            logger.warning("train.cv_cancelled", completed_folds=fold, total_folds=splits)
            break

        model = model_factory(**params)
        model.train([samples[i] for i in train_idx])
        held_out = [samples[i] for i in test_idx]
        metrics = model.evaluate(held_out)
        score = float(metrics[SCORE_METRICS[model.kind]])
        fold_scores.append(score)
        fold_metrics.append(metrics)

        logger.info("train.cv_fold", fold=fold + 1, folds=splits, score=round(score, 4), n_test=len(test_idx))
        if score > best_score:
            best_model, best_score = model, score

    return CrossValidationResult(
        best_model=best_model,
        best_score=best_score if best_model is not None else 0.0,
        fold_scores=fold_scores,
        fold_metrics=fold_metrics,
        cancelled=cancelled,
    )


# ──────────────────────────────────────────────────────────────────────────
# Hyperparameter tuning
# ──────────────────────────────────────────────────────────────────────────


def tune_hyperparameters(
    model_factory: ModelFactory,
    samples: Sequence[Any],
    grid: dict[str, Sequence[Any]],
    n_folds: int | None = None,
    random_state: int = 42,
    max_workers: int | None = None,
    cancel_token: CancellationToken | None = None,
) -> TuningResult:
    """
    Cross-validate every combination in the grid and rank them.

    With max_workers > 1 combinations run on a thread pool. Cancellation is
    checked before each combination starts; combinations already finished
    are kept.
    """
    combos = list(ParameterGrid({k: list(v) for k, v in grid.items()}))
    logger.info("train.tuning_started", combinations=len(combos), workers=max_workers or 1)

    def _run(params: dict[str, Any]) -> TrialResult | None:
        if _is_cancelled(cancel_token):
            return None
        cv = cross_validate(model_factory, samples, n_folds, params, random_state, cancel_token)
        if not cv.fold_scores:
            return None
        return TrialResult(params=dict(params), mean_score=cv.mean_score, std_score=cv.std_score, fold_scores=cv.fold_scores)

    if max_workers and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            outcomes = list(executor.map(_run, combos))
    else:
        outcomes = []
        for params in combos:
            if _is_cancelled(cancel_token):
                break
            outcomes.append(_run(params))

    trials = [t for t in outcomes if t is not None]
    # Stable sort keeps grid order among equal scores
    trials.sort(key=lambda t: -t.mean_score)
    cancelled = _is_cancelled(cancel_token)
    if cancelled:
        logger.warning("train.tuning_cancelled", completed=len(trials), total=len(combos))

    best = trials[0] if trials else None
    logger.info(
        "train.tuning_complete",
        best_params=best.params if best else None,
        best_score=round(best.mean_score, 4) if best else None,
        trials=len(trials),
    )
    return TuningResult(
        best_params=best.params if best else None,
        best_score=best.mean_score if best else 0.0,
        trials=trials,
        cancelled=cancelled,
    )


# ──────────────────────────────────────────────────────────────────────────
# Learning curve
# ──────────────────────────────────────────────────────────────────────────


def learning_curve(
    model_factory: ModelFactory,
    samples: Sequence[Any],
    fractions: Sequence[float] | None = None,
    gap_threshold: float | None = None,
    params: dict[str, Any] | None = None,
    random_state: int = 42,
) -> LearningCurveResult:
    """
    Train on growing fractions of shuffled data and validate on the rest.

    Overfitting is flagged when the final train/validation gap exceeds the
    threshold and did not shrink relative to the first point.
    """
    settings = get_settings()
    fractions = sorted(fractions or settings.learning_curve_fractions)
    gap_threshold = settings.overfit_gap_threshold if gap_threshold is None else gap_threshold
    params = params or {}
    samples = list(samples)

    order = np.random.default_rng(random_state).permutation(len(samples))
    shuffled = [samples[i] for i in order]

    points: list[LearningCurvePoint] = []
    for fraction in fractions:
        n_train = max(1, int(round(fraction * len(shuffled))))
        train_part, validation_part = shuffled[:n_train], shuffled[n_train:]
        if not validation_part:
            continue
        model = model_factory(**params)
        model.train(train_part)
        points.append(
            LearningCurvePoint(
                fraction=float(fraction),
                n_train=len(train_part),
                n_validation=len(validation_part),
                train_score=model.score(train_part),
                validation_score=model.score(validation_part),
            )
        )

    overfitting = False
    if points:
        first_gap, final_gap = points[0].gap, points[-1].gap
        overfitting = final_gap > gap_threshold and final_gap >= first_gap
    logger.info(
        "train.learning_curve",
        points=len(points),
        final_gap=round(points[-1].gap, 4) if points else None,
        overfitting=overfitting,
    )
    return LearningCurveResult(points=points, overfitting=overfitting, threshold=gap_threshold)


# ──────────────────────────────────────────────────────────────────────────
# Whole-pipeline helpers
# ──────────────────────────────────────────────────────────────────────────


def train_models(
    dataset: TrainingDataset,
    classifier_params: dict[str, Any] | None = None,
    regressor_params: dict[str, Any] | None = None,
    clusterer_params: dict[str, Any] | None = None,
    parallel: bool = False,
) -> TrainedModels:
    """Train all three models on the dataset, optionally one worker thread each."""
    classifier = NextLocationModel(**(classifier_params or {}))
    regressor = OptimalStayModel(**(regressor_params or {}))
    clusterer = ClusteringModel(**(clusterer_params or {}))
    jobs = [
        (classifier, dataset.classification),
        (regressor, dataset.regression),
        (clusterer, dataset.clustering),
    ]

    started = time.perf_counter()
    if parallel:
        with ThreadPoolExecutor(max_workers=len(jobs)) as executor:
            futures = [executor.submit(model.train, samples) for model, samples in jobs]
            results = [f.result() for f in futures]
    else:
        results = [model.train(samples) for model, samples in jobs]

    logger.info(
        "train.models_trained",
        parallel=parallel,
        seconds=round(time.perf_counter() - started, 3),
        ready={m.name: m.is_ready for m, _ in jobs},
    )
    return TrainedModels(
        classifier=classifier,
        regressor=regressor,
        clusterer=clusterer,
        metrics={m.kind: r for (m, _), r in zip(jobs, results)},
    )


def evaluate_models(
    dataset: TrainingDataset,
    n_folds: int | None = None,
    cancel_token: CancellationToken | None = None,
) -> dict[str, dict[str, Any]]:
    """Cross-validate each model type with default hyperparameters and summarize."""
    targets = {
        "classifier": (NextLocationModel, dataset.classification),
        "regressor": (OptimalStayModel, dataset.regression),
        "clusterer": (ClusteringModel, dataset.clustering),
    }
    summary = {}
    for kind, (factory, samples) in targets.items():
        cv = cross_validate(factory, samples, n_folds=n_folds, cancel_token=cancel_token)
        summary[kind] = {
            "mean_score": cv.mean_score,
            "std_score": cv.std_score,
            "fold_scores": cv.fold_scores,
            "folds_completed": cv.folds_completed,
            "cancelled": cv.cancelled,
            "n_samples": len(samples),
        }
        logger.info("train.evaluated", kind=kind, mean_score=round(cv.mean_score, 4), folds=cv.folds_completed)
    return summary
