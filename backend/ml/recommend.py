"""
Recommendation Engine — one actionable recommendation per entity.

Combines the three models for each entity:
  - classifier → ranked candidate destinations
  - regressor  → expected stay and movement readiness
  - clusterer  → behavioural context

Priority rules:
  high / move      predicted stay > 0, idle > predicted stay and
                   top destination confidence ≥ high_confidence_threshold
  medium / wait    predicted stay > 0 and idle ≥ approaching_ratio × stay
  low / monitor    otherwise

An entity is critical when idle ≥ critical_idle_ratio × predicted stay.

The optional RecommendationCache memoizes whole results by (entity id,
vector content hash, model fit ids). It is passed in explicitly, never
global, and removing it changes latency only.
"""

import hashlib
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Literal

import structlog

from core.config import get_settings
from ml.dataset import EntityState
from ml.features import FeatureVector
from ml.models import ClusteringModel, NextLocationModel, OptimalStayModel
from ml.train import TrainedModels

logger = structlog.get_logger()

Priority = Literal["high", "medium", "low"]
Action = Literal["move", "wait", "monitor"]

ATYPICAL_SIMILARITY = 0.2


# ──────────────────────────────────────────────────────────────────────────
# Result types
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SuggestedLocation:
    location_id: str
    confidence: float
    estimated_stay_days: float
    rationale: str


@dataclass(frozen=True)
class RecommendationItem:
    priority: Priority
    action: Action
    suggested_locations: tuple[SuggestedLocation, ...]
    rationale: str
    confidence: float


@dataclass(frozen=True)
class BestAction:
    action: Action
    location_id: str | None
    confidence: float
    summary: str


@dataclass(frozen=True)
class MovementRecommendation:
    entity_id: str
    current_location: str
    current_idle_days: float
    timestamp: datetime | None
    priority: Priority
    recommendations: tuple[RecommendationItem, ...]
    best_action: BestAction
    risk_factors: tuple[str, ...]
    opportunity_factors: tuple[str, ...]
    predicted_stay_days: float
    readiness_score: float
    cluster_id: int
    cluster_name: str
    critical: bool

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return data


@dataclass(frozen=True)
class BatchSummary:
    total_entities: int
    needs_immediate_action: int
    ready_to_move: int
    can_wait: int
    critical_entity_ids: tuple[str, ...]


@dataclass(frozen=True)
class EntityPrediction:
    entity_id: str
    recommendation: MovementRecommendation


@dataclass(frozen=True)
class BatchRecommendationResult:
    predictions: tuple[EntityPrediction, ...]
    summary: BatchSummary
    generated_at: datetime
    model_versions: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "predictions": [
                {"entity_id": p.entity_id, "recommendation": p.recommendation.to_dict()} for p in self.predictions
            ],
            "summary": asdict(self.summary),
            "generated_at": self.generated_at.isoformat(),
            "model_versions": dict(self.model_versions),
        }


# ──────────────────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────────────────


def cache_key(
    entity_id: str,
    vector: FeatureVector,
    current_location: str,
    current_idle_days: float,
    model_state: str = "",
) -> tuple[str, str]:
    digest = hashlib.sha256(
        f"{vector.content_hash()}|{current_location}|{current_idle_days!r}|{model_state}".encode()
    ).hexdigest()
    return entity_id, digest


class RecommendationCache:
    """Thread-safe TTL memo of whole MovementRecommendation values."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = get_settings().cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[float, MovementRecommendation]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: tuple[str, str]) -> MovementRecommendation | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                self._hits += 1
                return entry[1]
            if entry is not None:
                del self._entries[key]
            self._misses += 1
            return None

    def put(self, key: tuple[str, str], value: MovementRecommendation) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("recommend.cache_cleared", entries=dropped)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._entries),
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }


# ──────────────────────────────────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────────────────────────────────


class RecommendationEngine:
    def __init__(
        self,
        classifier: NextLocationModel,
        regressor: OptimalStayModel,
        clusterer: ClusteringModel,
        cache: RecommendationCache | None = None,
        top_k: int | None = None,
        high_confidence_threshold: float | None = None,
        approaching_ratio: float | None = None,
        critical_idle_ratio: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = get_settings()
        self.classifier = classifier
        self.regressor = regressor
        self.clusterer = clusterer
        self.cache = cache
        self.top_k = settings.top_k_predictions if top_k is None else top_k
        self.high_confidence_threshold = (
            settings.high_confidence_threshold if high_confidence_threshold is None else high_confidence_threshold
        )
        self.approaching_ratio = settings.approaching_stay_ratio if approaching_ratio is None else approaching_ratio
        self.critical_idle_ratio = settings.critical_idle_ratio if critical_idle_ratio is None else critical_idle_ratio
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_trained(cls, models: TrainedModels, **kwargs: Any) -> "RecommendationEngine":
        return cls(models.classifier, models.regressor, models.clusterer, **kwargs)

    @property
    def model_state(self) -> str:
        """Fit ids of the three models; retraining any of them changes it."""
        return "|".join(m.fit_id for m in (self.classifier, self.regressor, self.clusterer))

    @property
    def model_versions(self) -> dict[str, str]:
        return {m.name: m.version for m in (self.classifier, self.regressor, self.clusterer)}

    def recommend_one(
        self,
        entity_id: str,
        vector: FeatureVector,
        current_location: str | None = None,
        current_idle_days: float | None = None,
    ) -> MovementRecommendation:
        if current_location is None:
            current_location = str(vector.metadata.get("current_location", ""))
        if current_idle_days is None:
            current_idle_days = float(vector.metadata.get("current_idle_days", 0.0) or 0.0)

        key = None
        if self.cache is not None:
            key = cache_key(entity_id, vector, current_location, current_idle_days, self.model_state)
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        recommendation = self._build(entity_id, vector, current_location, current_idle_days)
        if self.cache is not None:
            self.cache.put(key, recommendation)
        return recommendation

    def _build(
        self,
        entity_id: str,
        vector: FeatureVector,
        current_location: str,
        idle: float,
    ) -> MovementRecommendation:
        location = self.classifier.predict(vector, top_k=self.top_k)
        stay = self.regressor.predict(vector, current_idle_days=idle)
        cluster = self.clusterer.predict(vector)

        predicted = stay.predicted_days
        top = location.top
        top_conf = top.confidence if top else 0.0

        if predicted > 0 and idle > predicted and top_conf >= self.high_confidence_threshold:
            priority: Priority = "high"
        elif predicted > 0 and idle >= self.approaching_ratio * predicted:
            priority = "medium"
        else:
            priority = "low"
        critical = predicted > 0 and idle >= self.critical_idle_ratio * predicted

        suggestions = tuple(
            SuggestedLocation(
                location_id=c.location_id,
                confidence=c.confidence,
                estimated_stay_days=predicted,
                rationale=c.rationale,
            )
            for c in location.candidates
        )
        context = f"{stay.rationale}. {cluster.rationale}."
        if top:
            context = f"{top.rationale}. {context}"

        if priority == "high":
            items = (
                RecommendationItem("high", "move", suggestions, f"Move now: {context}", top_conf),
                RecommendationItem(
                    "medium", "wait", suggestions, "Hold only if a planned deployment is imminent", 1.0 - top_conf
                ),
            )
        elif priority == "medium":
            items = (
                RecommendationItem("medium", "wait", suggestions, f"Prepare to move: {context}", stay.readiness_score),
            )
            if suggestions:
                items += (
                    RecommendationItem(
                        "low", "move", suggestions[:1], "Move early to the most likely destination", top_conf
                    ),
                )
        else:
            items = (
                RecommendationItem(
                    "low",
                    "monitor",
                    suggestions,
                    f"No action needed yet: {context}",
                    1.0 - stay.readiness_score if predicted > 0 else 0.0,
                ),
            )

        primary = items[0]
        best_location = top.location_id if top and primary.action != "monitor" else None
        if primary.action == "move":
            summary = f"Move {entity_id} to {best_location} ({top_conf:.0%} confidence)"
        elif primary.action == "wait":
            summary = f"Prepare {entity_id} to move in ~{max(0.0, predicted - idle):.0f} days"
        else:
            summary = f"Keep {entity_id} at {current_location or 'its current location'}"

        risks = []
        if critical:
            risks.append(f"Idle {idle:.0f} days, far beyond typical stay of {predicted:.0f} days")
        if not location.candidates:
            risks.append("No destination pattern available")
        if cluster.cluster_id >= 0 and cluster.similarity < ATYPICAL_SIMILARITY:
            risks.append(f"Behaviour is atypical for the {cluster.cluster_name} group")
        for model in (self.classifier, self.regressor, self.clusterer):
            if not model.is_ready:
                risks.append(f"{model.name} is not trained")

        opportunities = []
        if top and top_conf >= self.high_confidence_threshold:
            opportunities.append(f"High-confidence destination available: {top.location_id} ({top_conf:.0%})")
        if predicted > 0 and stay.readiness_score >= 1.0:
            opportunities.append("Expected stay complete; unit is free for redeployment")
        if cluster.cluster_name == "rapid_rotation":
            opportunities.append("Rapid-rotation unit; quick redeployments are typical")

        return MovementRecommendation(
            entity_id=entity_id,
            current_location=current_location,
            current_idle_days=idle,
            timestamp=vector.timestamp,
            priority=priority,
            recommendations=items,
            best_action=BestAction(
                action=primary.action,
                location_id=best_location,
                confidence=primary.confidence,
                summary=summary,
            ),
            risk_factors=tuple(risks),
            opportunity_factors=tuple(opportunities),
            predicted_stay_days=predicted,
            readiness_score=stay.readiness_score,
            cluster_id=cluster.cluster_id,
            cluster_name=cluster.cluster_name,
            critical=critical,
        )

    def recommend_batch(
        self,
        entities: Sequence[EntityState],
        max_workers: int | None = None,
    ) -> BatchRecommendationResult:
        """Score every entity (optionally on a thread pool; output keeps input order)."""

        def _score(state: EntityState) -> MovementRecommendation:
            return self.recommend_one(state.entity_id, state.vector, state.current_location, state.current_idle_days)

        if max_workers and max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                recommendations = list(executor.map(_score, entities))
        else:
            recommendations = [_score(s) for s in entities]

        summary = BatchSummary(
            total_entities=len(recommendations),
            needs_immediate_action=sum(1 for r in recommendations if r.priority == "high"),
            ready_to_move=sum(1 for r in recommendations if r.priority == "medium"),
            can_wait=sum(1 for r in recommendations if r.priority == "low"),
            critical_entity_ids=tuple(r.entity_id for r in recommendations if r.critical),
        )
        logger.info(
            "recommend.batch_scored",
            entities=summary.total_entities,
            high=summary.needs_immediate_action,
            medium=summary.ready_to_move,
            low=summary.can_wait,
            critical=len(summary.critical_entity_ids),
            cache=self.cache.stats() if self.cache is not None else None,
        )
        return BatchRecommendationResult(
            predictions=tuple(EntityPrediction(r.entity_id, r) for r in recommendations),
            summary=summary,
            generated_at=self._clock(),
            model_versions=self.model_versions,
        )
