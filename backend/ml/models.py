"""
Prediction Models — next location, optimal stay and behavioural clustering.

Three independent model types share one contract (MovementModel):

  NextLocationModel  — k-nearest-neighbours vote over past destinations
  OptimalStayModel   — linear regression fit by fixed-step gradient descent
  ClusteringModel    — k-means over entity feature vectors

Each is trained, evaluated and serialized on its own; nothing inherits
from a common base. Predicting with an untrained model never raises: it
returns a neutral prediction (empty candidate list, zero stay, cluster -1)
with an explanatory rationale. A vector whose layout differs from the
training layout raises FeatureMismatchError.

Cluster interpretation (ids are relabelled after training by average idle days):
  - Cluster 0 (rapid_rotation):  short stays, frequent moves
  - Cluster 1 (steady_rotation): typical stays
  - Cluster 2 (long_stay):       long dwell times
  - Cluster 3+ (cluster_<n>)
"""

import hashlib
import json
from collections import Counter
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

import numpy as np
import structlog

from core.config import get_settings
from ml.dataset import ClassificationSample, ClusteringSample, RegressionSample
from ml.features import FeatureVector, check_layout, mask_current_idle, stack_vectors
from ml.metrics_contract import classification_metrics, clustering_metrics, regression_metrics

logger = structlog.get_logger()

ModelKind = Literal["classifier", "regressor", "clusterer"]

FORMAT_VERSION = 1

MIN_STAY_DAYS = 1.0
MAX_STAY_DAYS = 90.0
STAY_INTERVAL_PCT = 0.20

CLUSTER_LABELS = {
    0: "rapid_rotation",
    1: "steady_rotation",
    2: "long_stay",
}

UNASSIGNED_CLUSTER = -1
UNTRAINED_FIT_ID = "untrained"

# Headline metric each kind is ranked by (higher is better)
SCORE_METRICS: dict[str, str] = {"classifier": "accuracy", "regressor": "r2", "clusterer": "silhouette"}


class ModelFormatError(ValueError):
    """Raised when a serialized model blob is unreadable or of the wrong kind/version."""


@runtime_checkable
class MovementModel(Protocol):
    name: str
    version: str
    kind: ModelKind
    hyperparameters: dict[str, Any]
    metrics: dict[str, Any]
    fit_id: str

    @property
    def is_ready(self) -> bool: ...

    def train(self, samples: Sequence[Any]) -> dict[str, Any]: ...

    def predict(self, vector: FeatureVector) -> Any: ...

    def evaluate(self, samples: Sequence[Any]) -> dict[str, Any]: ...

    def score(self, samples: Sequence[Any]) -> float: ...

    def serialize(self) -> str: ...


# ══════════════════════════════════════════════════════════════════════════
# Prediction types
# ══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class LocationCandidate:
    location_id: str
    probability: float
    confidence: float
    votes: int
    rationale: str


@dataclass(frozen=True)
class NextLocationPrediction:
    entity_id: str
    candidates: list[LocationCandidate]
    top: LocationCandidate | None
    neighbors_considered: int
    rationale: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OptimalStayPrediction:
    entity_id: str
    predicted_days: float
    lower_bound: float
    upper_bound: float
    readiness_score: float
    current_idle_days: float
    rationale: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ClusterCharacteristics:
    avg_movements: float
    avg_idle_days: float
    common_paths: list[str] = field(default_factory=list)
    regions: list[str] = field(default_factory=list)
    seasonal: bool = False


@dataclass(frozen=True)
class ClusterPrediction:
    entity_id: str
    cluster_id: int
    cluster_name: str
    similarity: float
    distance: float
    characteristics: ClusterCharacteristics | None
    rationale: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ClusterSummary:
    cluster_id: int
    name: str
    size: int
    member_ids: list[str]
    centroid: list[float]
    characteristics: ClusterCharacteristics


# ══════════════════════════════════════════════════════════════════════════
# Serialization helpers
# ══════════════════════════════════════════════════════════════════════════


def _encode(model: Any, state: dict[str, Any]) -> str:
    return json.dumps(
        {
            "format_version": FORMAT_VERSION,
            "kind": model.kind,
            "name": model.name,
            "version": model.version,
            "hyperparameters": model.hyperparameters,
            "metrics": model.metrics,
            "feature_names": list(model.feature_names),
            "state": state,
        },
        default=float,
    )


def _fit_id(model: Any) -> str:
    """Digest of the serialized state; changes whenever train() or deserialize() changes the model."""
    if not model.is_ready:
        return UNTRAINED_FIT_ID
    return hashlib.sha256(model.serialize().encode()).hexdigest()[:16]


def decode_blob(blob: str, expected_kind: ModelKind | None = None) -> dict[str, Any]:
    """Parse and sanity-check a serialized model. Raises ModelFormatError."""
    try:
        payload = json.loads(blob)
    except (TypeError, json.JSONDecodeError) as e:
        raise ModelFormatError(f"Model blob is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ModelFormatError("Model blob must decode to an object")

    missing = [k for k in ("format_version", "kind", "name", "version", "state") if k not in payload]
    if missing:
        raise ModelFormatError(f"Model blob is missing keys: {missing}")
    if payload["format_version"] != FORMAT_VERSION:
        raise ModelFormatError(f"Unsupported model format_version: {payload['format_version']}")
    if payload["kind"] not in MODEL_CLASSES:
        raise ModelFormatError(f"Unknown model kind: {payload['kind']!r}")
    if expected_kind is not None and payload["kind"] != expected_kind:
        raise ModelFormatError(f"Expected a {expected_kind} blob, got {payload['kind']}")
    return payload


def _restore_common(model: Any, payload: dict[str, Any]) -> None:
    model.name = payload["name"]
    model.version = payload["version"]
    model.hyperparameters = dict(payload.get("hyperparameters") or model.hyperparameters)
    model.metrics = dict(payload.get("metrics") or {})
    model.feature_names = tuple(payload.get("feature_names") or ())


# ══════════════════════════════════════════════════════════════════════════
# Next-Location Model (k-nearest neighbours)
# ══════════════════════════════════════════════════════════════════════════


class NextLocationModel:
    """
    K-nearest-neighbours classifier over raw feature vectors.

    Probability of a destination = neighbour votes / effective k, where the
    effective k is min(k, training samples). Distance ties keep training
    order; probability ties are ordered by location id.
    """

    kind: ModelKind = "classifier"

    def __init__(self, k: int | None = None, name: str = "next_location_knn", version: str = "1.0.0"):
        k = get_settings().knn_k if k is None else k
        if k < 1:
            raise ValueError("k must be at least 1")
        self.name = name
        self.version = version
        self.hyperparameters: dict[str, Any] = {"k": int(k)}
        self.metrics: dict[str, Any] = {}
        self.fit_id = UNTRAINED_FIT_ID
        self.feature_names: tuple[str, ...] = ()
        self._X = np.empty((0, 0))
        self._labels: list[str] = []

    @property
    def is_ready(self) -> bool:
        return len(self._labels) > 0

    @property
    def classes(self) -> list[str]:
        return sorted(set(self._labels))

    def train(self, samples: Sequence[ClassificationSample]) -> dict[str, Any]:
        self._X = np.empty((0, 0))
        self._labels = []
        self.feature_names = ()
        self.metrics = {}
        self.fit_id = UNTRAINED_FIT_ID
        if not samples:
            logger.warning("models.train_empty", model=self.name)
            return self.metrics

        self._X = stack_vectors([s.vector for s in samples])
        self._labels = [s.label for s in samples]
        self.feature_names = tuple(samples[0].vector.feature_names)
        self.metrics = {"n_samples": len(samples), "n_classes": len(self.classes), "k": self.hyperparameters["k"]}
        logger.info("models.trained", model=self.name, **self.metrics)
        self.fit_id = _fit_id(self)
        return self.metrics

    def predict(self, vector: FeatureVector, top_k: int | None = None) -> NextLocationPrediction:
        if not self.is_ready:
            logger.warning("models.untrained_predict", model=self.name, entity_id=vector.entity_id)
            return NextLocationPrediction(
                entity_id=vector.entity_id,
                candidates=[],
                top=None,
                neighbors_considered=0,
                rationale="Model not trained; no destination history available",
            )
        check_layout(vector, self.feature_names)
        top_k = get_settings().top_k_predictions if top_k is None else top_k

        distances = np.linalg.norm(self._X - vector.as_array(), axis=1)
        k_eff = min(self.hyperparameters["k"], len(self._labels))
        nearest = np.argsort(distances, kind="stable")[:k_eff]
        votes = Counter(self._labels[i] for i in nearest)

        ranked = sorted(votes.items(), key=lambda kv: (-kv[1], kv[0]))
        candidates = [
            LocationCandidate(
                location_id=loc,
                probability=count / k_eff,
                confidence=count / k_eff,
                votes=count,
                rationale=f"{count} of {k_eff} nearest neighbors moved to {loc}",
            )
            for loc, count in ranked[: max(top_k, 0)]
        ]
        top = candidates[0] if candidates else None
        return NextLocationPrediction(
            entity_id=vector.entity_id,
            candidates=candidates,
            top=top,
            neighbors_considered=k_eff,
            rationale=top.rationale if top else "No neighbours available",
        )

    def evaluate(self, samples: Sequence[ClassificationSample]) -> dict[str, Any]:
        if not self.is_ready or not samples:
            return classification_metrics([], [])
        n_classes = len(self.classes)
        predictions = [self.predict(s.vector, top_k=n_classes) for s in samples]
        ranked = [[c.location_id for c in p.candidates] for p in predictions]
        y_pred = [r[0] if r else "" for r in ranked]
        return classification_metrics([s.label for s in samples], y_pred, ranked=ranked)

    def score(self, samples: Sequence[ClassificationSample]) -> float:
        return float(self.evaluate(samples)[SCORE_METRICS[self.kind]])

    def serialize(self) -> str:
        return _encode(self, {"X": self._X.tolist(), "labels": self._labels})

    @classmethod
    def deserialize(cls, blob: str) -> "NextLocationModel":
        payload = decode_blob(blob, expected_kind="classifier")
        try:
            model = cls(k=int(payload["hyperparameters"]["k"]))
            _restore_common(model, payload)
            labels = [str(v) for v in payload["state"]["labels"]]
            X = np.asarray(payload["state"]["X"], dtype=float)
        except (KeyError, TypeError, ValueError) as e:
            raise ModelFormatError(f"Corrupt classifier state: {e}") from e
        if labels and (X.ndim != 2 or X.shape[0] != len(labels) or X.shape[1] != len(model.feature_names)):
            raise ModelFormatError("Classifier training matrix does not match its labels/feature names")
        model._X = X if labels else np.empty((0, 0))
        model._labels = labels
        model.fit_id = _fit_id(model)
        return model


# ══════════════════════════════════════════════════════════════════════════
# Optimal-Stay Model (gradient-descent linear regression)
# ══════════════════════════════════════════════════════════════════════════


class OptimalStayModel:
    """
    Linear regression on standardized features, fit by fixed-step gradient descent.

    Predictions are clamped to [1, 90] days. The confidence interval is
    ±20% of the clamped value and readiness = min(1, idle / predicted).
    """

    kind: ModelKind = "regressor"

    def __init__(
        self,
        learning_rate: float | None = None,
        iterations: int | None = None,
        name: str = "optimal_stay_linear",
        version: str = "1.0.0",
    ):
        settings = get_settings()
        learning_rate = settings.stay_learning_rate if learning_rate is None else learning_rate
        iterations = settings.stay_iterations if iterations is None else iterations
        if learning_rate <= 0 or iterations < 1:
            raise ValueError("learning_rate must be positive and iterations at least 1")
        self.name = name
        self.version = version
        self.hyperparameters: dict[str, Any] = {"learning_rate": float(learning_rate), "iterations": int(iterations)}
        self.metrics: dict[str, Any] = {}
        self.fit_id = UNTRAINED_FIT_ID
        self.feature_names: tuple[str, ...] = ()
        self._mean = np.empty(0)
        self._std = np.empty(0)
        self._weights = np.empty(0)
        self._intercept = 0.0
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def coefficients(self) -> dict[str, float]:
        return {n: float(w) for n, w in zip(self.feature_names, self._weights)}

    def train(self, samples: Sequence[RegressionSample]) -> dict[str, Any]:
        self._ready = False
        self.metrics = {}
        self.fit_id = UNTRAINED_FIT_ID
        self.feature_names = ()
        if not samples:
            logger.warning("models.train_empty", model=self.name)
            return self.metrics

        X = stack_vectors([mask_current_idle(s.vector) for s in samples])
        y = np.asarray([s.label for s in samples], dtype=float)
        self.feature_names = tuple(samples[0].vector.feature_names)

        self._mean = X.mean(axis=0)
        std = X.std(axis=0)
        self._std = np.where(std == 0, 1.0, std)
        Xb = np.hstack([np.ones((len(X), 1)), (X - self._mean) / self._std])

        lr = self.hyperparameters["learning_rate"]
        coef = np.zeros(Xb.shape[1])
        with np.errstate(over="ignore", invalid="ignore"):
            for _ in range(self.hyperparameters["iterations"]):
                gradient = Xb.T @ (Xb @ coef - y) / len(y)
                coef = coef - lr * gradient
                if not np.all(np.isfinite(coef)):
                    break

        if np.all(np.isfinite(coef)):
            self._intercept = float(coef[0])
            self._weights = coef[1:]
        else:
            logger.warning("models.gradient_diverged", model=self.name, learning_rate=lr)
            self._intercept = float(y.mean())
            self._weights = np.zeros(Xb.shape[1] - 1)

        self._ready = True
        self.metrics = regression_metrics(y, self._predict_matrix(X))
        logger.info("models.trained", model=self.name, n_samples=len(y), r2=round(self.metrics["r2"], 4))
        self.fit_id = _fit_id(self)
        return self.metrics

    def _predict_matrix(self, X: np.ndarray) -> np.ndarray:
        raw = self._intercept + ((X - self._mean) / self._std) @ self._weights
        raw = np.where(np.isfinite(raw), raw, MIN_STAY_DAYS)
        return np.clip(raw, MIN_STAY_DAYS, MAX_STAY_DAYS)

    def _main_driver(self, vector: FeatureVector) -> str | None:
        if not len(self._weights):
            return None
        contributions = np.abs(((vector.as_array() - self._mean) / self._std) * self._weights)
        if not np.any(contributions > 0):
            return None
        return self.feature_names[int(np.argmax(contributions))]

    def predict(self, vector: FeatureVector, current_idle_days: float | None = None) -> OptimalStayPrediction:
        if current_idle_days is None:
            current_idle_days = float(vector.metadata.get("current_idle_days", 0.0) or 0.0)
        if not self.is_ready:
            logger.warning("models.untrained_predict", model=self.name, entity_id=vector.entity_id)
            return OptimalStayPrediction(
                entity_id=vector.entity_id,
                predicted_days=0.0,
                lower_bound=0.0,
                upper_bound=0.0,
                readiness_score=0.0,
                current_idle_days=current_idle_days,
                rationale="Model not trained; no stay estimate available",
            )
        check_layout(vector, self.feature_names)
        # The current idle time of a completed stay is the training label, so it never reaches the model
        masked = mask_current_idle(vector)

        predicted = float(self._predict_matrix(masked.as_array()[None, :])[0])
        readiness = min(1.0, max(0.0, current_idle_days) / predicted)
        lower = predicted * (1 - STAY_INTERVAL_PCT)
        upper = predicted * (1 + STAY_INTERVAL_PCT)
        rationale = (
            f"Typical stay for this pattern is {predicted:.1f} days ({lower:.1f}-{upper:.1f}); "
            f"idle {current_idle_days:.1f} days, readiness {readiness:.0%}"
        )
        driver = self._main_driver(masked)
        if driver:
            rationale += f"; strongest signal: {driver}"
        return OptimalStayPrediction(
            entity_id=vector.entity_id,
            predicted_days=predicted,
            lower_bound=lower,
            upper_bound=upper,
            readiness_score=readiness,
            current_idle_days=current_idle_days,
            rationale=rationale,
        )

    def evaluate(self, samples: Sequence[RegressionSample]) -> dict[str, Any]:
        if not self.is_ready or not samples:
            return regression_metrics([], [])
        check_layout(samples[0].vector, self.feature_names)
        X = stack_vectors([mask_current_idle(s.vector) for s in samples])
        return regression_metrics([s.label for s in samples], self._predict_matrix(X))

    def score(self, samples: Sequence[RegressionSample]) -> float:
        return float(self.evaluate(samples)[SCORE_METRICS[self.kind]])

    def serialize(self) -> str:
        state = {
            "ready": self._ready,
            "mean": self._mean.tolist(),
            "std": self._std.tolist(),
            "weights": self._weights.tolist(),
            "intercept": self._intercept,
        }
        return _encode(self, state)

    @classmethod
    def deserialize(cls, blob: str) -> "OptimalStayModel":
        payload = decode_blob(blob, expected_kind="regressor")
        try:
            hp = payload["hyperparameters"]
            model = cls(learning_rate=float(hp["learning_rate"]), iterations=int(hp["iterations"]))
            _restore_common(model, payload)
            state = payload["state"]
            model._mean = np.asarray(state["mean"], dtype=float)
            model._std = np.asarray(state["std"], dtype=float)
            model._weights = np.asarray(state["weights"], dtype=float)
            model._intercept = float(state["intercept"])
            model._ready = bool(state["ready"])
        except (KeyError, TypeError, ValueError) as e:
            raise ModelFormatError(f"Corrupt regressor state: {e}") from e
        n = len(model.feature_names)
        if model._ready and not (len(model._mean) == len(model._std) == len(model._weights) == n):
            raise ModelFormatError("Regressor coefficients do not match its feature names")
        model.fit_id = _fit_id(model)
        return model


# ══════════════════════════════════════════════════════════════════════════
# Clustering Model (k-means)
# ══════════════════════════════════════════════════════════════════════════


def cluster_label(cluster_id: int) -> str:
    return CLUSTER_LABELS.get(cluster_id, f"cluster_{cluster_id}")


def _characterize(members: Sequence[ClusteringSample]) -> ClusterCharacteristics:
    if not members:
        return ClusterCharacteristics(avg_movements=0.0, avg_idle_days=0.0)
    movements, idle, seasonal = [], [], 0
    paths: Counter = Counter()
    regions: Counter = Counter()
    for sample in members:
        agg = sample.aggregates
        movements.append(agg.total_movements if agg else len(sample.history))
        idle.append(agg.avg_idle_days if agg else sample.vector.value("avg_historical_idle_days"))
        seasonal += 1 if agg and agg.has_seasonal_pattern else 0
        for mov in sample.history:
            if mov.from_location_id and mov.to_location_id:
                paths[f"{mov.from_location_id} -> {mov.to_location_id}"] += 1
            if mov.region:
                regions[mov.region] += 1
    return ClusterCharacteristics(
        avg_movements=float(np.mean(movements)),
        avg_idle_days=float(np.mean(idle)),
        common_paths=[p for p, _ in paths.most_common(3)],
        regions=[r for r, _ in regions.most_common(3)],
        seasonal=seasonal * 2 > len(members),
    )


class ClusteringModel:
    """
    K-means over entity feature vectors.

    Centroids start at k distinct training samples drawn with a seeded RNG.
    Empty clusters keep their centroid for that iteration. After training,
    clusters are renumbered by ascending member average idle days so
    cluster 0 is always the fastest-rotating group.
    """

    kind: ModelKind = "clusterer"

    def __init__(
        self,
        k: int | None = None,
        max_iterations: int | None = None,
        random_state: int | None = None,
        name: str = "behaviour_kmeans",
        version: str = "1.0.0",
    ):
        settings = get_settings()
        k = settings.kmeans_k if k is None else k
        max_iterations = settings.kmeans_max_iterations if max_iterations is None else max_iterations
        random_state = settings.kmeans_random_state if random_state is None else random_state
        if k < 1 or max_iterations < 1:
            raise ValueError("k and max_iterations must be at least 1")
        self.name = name
        self.version = version
        self.hyperparameters: dict[str, Any] = {
            "k": int(k),
            "max_iterations": int(max_iterations),
            "random_state": random_state,
        }
        self.metrics: dict[str, Any] = {}
        self.fit_id = UNTRAINED_FIT_ID
        self.feature_names: tuple[str, ...] = ()
        self._centroids = np.empty((0, 0))
        self._members: dict[int, list[str]] = {}
        self._characteristics: dict[int, ClusterCharacteristics] = {}
        self.assignments: dict[str, int] = {}
        self.iterations_run = 0

    @property
    def is_ready(self) -> bool:
        return len(self._centroids) > 0

    @property
    def centroids(self) -> np.ndarray:
        return self._centroids.copy()

    def _assign(self, X: np.ndarray, centroids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        dist = np.linalg.norm(X[:, None, :] - centroids[None, :, :], axis=2)
        labels = np.argmin(dist, axis=1)
        return labels, dist[np.arange(len(X)), labels]

    def train(self, samples: Sequence[ClusteringSample]) -> dict[str, Any]:
        self._centroids = np.empty((0, 0))
        self._members, self._characteristics, self.assignments = {}, {}, {}
        self.metrics = {}
        self.fit_id = UNTRAINED_FIT_ID
        self.feature_names = ()
        if not samples:
            logger.warning("models.train_empty", model=self.name)
            return self.metrics

        X = stack_vectors([s.vector for s in samples])
        self.feature_names = tuple(samples[0].vector.feature_names)
        n = len(X)
        k_eff = min(self.hyperparameters["k"], n)
        rng = np.random.default_rng(self.hyperparameters["random_state"])
        centroids = X[rng.choice(n, size=k_eff, replace=False)].copy()

        labels = np.full(n, -1)
        self.iterations_run = 0
        for _ in range(self.hyperparameters["max_iterations"]):
            self.iterations_run += 1
            new_labels, _ = self._assign(X, centroids)
            new_centroids = centroids.copy()
            for c in range(k_eff):
                mask = new_labels == c
                if mask.any():
                    new_centroids[c] = X[mask].mean(axis=0)
            converged = np.array_equal(new_labels, labels) and np.allclose(new_centroids, centroids)
            labels, centroids = new_labels, new_centroids
            if converged:
                break

        # Renumber clusters by ascending average idle days of their members
        def _avg_idle(c: int) -> float:
            idle = [
                s.aggregates.avg_idle_days if s.aggregates else s.vector.value("avg_historical_idle_days")
                for s, lab in zip(samples, labels)
                if lab == c
            ]
            return float(np.mean(idle)) if idle else float("inf")

        order = sorted(range(k_eff), key=lambda c: (_avg_idle(c), c))
        remap = {old: new for new, old in enumerate(order)}
        self._centroids = centroids[order]
        labels = np.array([remap[int(lab)] for lab in labels])

        for c in range(k_eff):
            members = [s for s, lab in zip(samples, labels) if lab == c]
            self._members[c] = [s.entity_id for s in members]
            self._characteristics[c] = _characterize(members)
        self.assignments = {s.entity_id: int(lab) for s, lab in zip(samples, labels)}

        self.metrics = clustering_metrics(X, labels, self._centroids)
        self.metrics["iterations"] = self.iterations_run
        logger.info(
            "models.trained",
            model=self.name,
            n_samples=n,
            k=k_eff,
            iterations=self.iterations_run,
            silhouette=round(self.metrics["silhouette"], 4),
            cluster_sizes={cluster_label(c): len(m) for c, m in self._members.items()},
        )
        self.fit_id = _fit_id(self)
        return self.metrics

    def predict(self, vector: FeatureVector) -> ClusterPrediction:
        if not self.is_ready:
            logger.warning("models.untrained_predict", model=self.name, entity_id=vector.entity_id)
            return ClusterPrediction(
                entity_id=vector.entity_id,
                cluster_id=UNASSIGNED_CLUSTER,
                cluster_name="Unassigned",
                similarity=0.0,
                distance=0.0,
                characteristics=None,
                rationale="Model not trained; no behavioural cluster available",
            )
        check_layout(vector, self.feature_names)
        labels, dist = self._assign(vector.as_array()[None, :], self._centroids)
        cluster_id, distance = int(labels[0]), float(dist[0])
        similarity = 1.0 / (1.0 + distance)
        chars = self._characteristics.get(cluster_id)
        name = cluster_label(cluster_id)
        rationale = f"Behaves like the {name} group (similarity {similarity:.2f})"
        if chars:
            rationale += f": typically idle {chars.avg_idle_days:.1f} days over {chars.avg_movements:.1f} moves"
        return ClusterPrediction(
            entity_id=vector.entity_id,
            cluster_id=cluster_id,
            cluster_name=name,
            similarity=similarity,
            distance=distance,
            characteristics=chars,
            rationale=rationale,
        )

    def get_clusters(self) -> list[ClusterSummary]:
        return [
            ClusterSummary(
                cluster_id=c,
                name=cluster_label(c),
                size=len(self._members.get(c, [])),
                member_ids=list(self._members.get(c, [])),
                centroid=self._centroids[c].tolist(),
                characteristics=self._characteristics.get(c, ClusterCharacteristics(0.0, 0.0)),
            )
            for c in range(len(self._centroids))
        ]

    def evaluate(self, samples: Sequence[ClusteringSample]) -> dict[str, Any]:
        if not self.is_ready or not samples:
            return clustering_metrics([], [], [])
        X = stack_vectors([s.vector for s in samples])
        check_layout(samples[0].vector, self.feature_names)
        labels, _ = self._assign(X, self._centroids)
        return clustering_metrics(X, labels, self._centroids)

    def score(self, samples: Sequence[ClusteringSample]) -> float:
        return float(self.evaluate(samples)[SCORE_METRICS[self.kind]])

    def serialize(self) -> str:
        state = {
            "centroids": self._centroids.tolist(),
            "members": {str(c): ids for c, ids in self._members.items()},
            "characteristics": {str(c): asdict(ch) for c, ch in self._characteristics.items()},
            "assignments": self.assignments,
        }
        return _encode(self, state)

    @classmethod
    def deserialize(cls, blob: str) -> "ClusteringModel":
        payload = decode_blob(blob, expected_kind="clusterer")
        try:
            hp = payload["hyperparameters"]
            model = cls(k=int(hp["k"]), max_iterations=int(hp["max_iterations"]), random_state=hp["random_state"])
            _restore_common(model, payload)
            state = payload["state"]
            centroids = np.asarray(state["centroids"], dtype=float)
            model._members = {int(c): list(ids) for c, ids in state["members"].items()}
            model._characteristics = {
                int(c): ClusterCharacteristics(**ch) for c, ch in state["characteristics"].items()
            }
            model.assignments = {str(e): int(c) for e, c in state["assignments"].items()}
        except (KeyError, TypeError, ValueError) as e:
            raise ModelFormatError(f"Corrupt clusterer state: {e}") from e
        if centroids.size and (centroids.ndim != 2 or centroids.shape[1] != len(model.feature_names)):
            raise ModelFormatError("Cluster centroids do not match the feature names")
        model._centroids = centroids if centroids.size else np.empty((0, 0))
        model.fit_id = _fit_id(model)
        return model


MODEL_CLASSES: dict[str, type] = {
    "classifier": NextLocationModel,
    "regressor": OptimalStayModel,
    "clusterer": ClusteringModel,
}


def model_from_blob(blob: str) -> MovementModel:
    """Restore whichever model kind the blob holds."""
    payload = decode_blob(blob)
    return MODEL_CLASSES[payload["kind"]].deserialize(blob)
