"""
FleetPilot Configuration

Uses pydantic-settings for type-safe environment variable loading.
Every tunable of the movement pipeline lives here; modules accept explicit
overrides so tests and notebooks never need to touch the environment.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Find .env file: check CWD first, then parent (project root)
_env_file = Path(".env")
if not _env_file.exists():
    _parent_env = Path(__file__).resolve().parent.parent.parent / ".env"
    if _parent_env.exists():
        _env_file = _parent_env


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "FleetPilot"
    app_version: str = "1.0.0"
    app_env: str = "local"
    debug: bool = False

    # ── Data preparation ─────────────────────────────────────────────
    # Months (1-12) treated as the operational peak window
    peak_season_months: list[int] = [11, 12, 1, 2, 3]
    # A month is a per-entity peak when its count exceeds multiplier × active-month mean
    peak_month_multiplier: float = 1.5
    min_gaps_for_consistency: int = 2
    warehouse_name_keywords: list[str] = ["warehouse", "wh", "depot", "storage", "yard"]

    # Accuracy bounding box (defaults cover the Kingdom of Saudi Arabia)
    bbox_min_lat: float = 16.0
    bbox_max_lat: float = 32.5
    bbox_min_lon: float = 34.5
    bbox_max_lon: float = 55.7

    # ── Models ───────────────────────────────────────────────────────
    knn_k: int = 5
    stay_learning_rate: float = 0.05
    stay_iterations: int = 500
    kmeans_k: int = 3
    kmeans_max_iterations: int = 100
    kmeans_random_state: int | None = 42

    # ── Training ─────────────────────────────────────────────────────
    cv_folds: int = 5
    learning_curve_fractions: list[float] = [0.1, 0.3, 0.5, 0.7, 0.9]
    overfit_gap_threshold: float = 0.1

    # ── Inference ────────────────────────────────────────────────────
    top_k_predictions: int = 3
    high_confidence_threshold: float = 0.6
    approaching_stay_ratio: float = 0.8
    critical_idle_ratio: float = 1.5
    cache_ttl_seconds: float = 3600.0

    # Saved model versions (written only by explicit save calls)
    artifact_dir: str = str(Path(__file__).resolve().parent.parent / "models")

    model_config = {
        "env_file": str(_env_file),
        "env_file_encoding": "utf-8",
        "env_prefix": "FLEETPILOT_",
        "case_sensitive": False,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    settings = Settings()
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    """Refuse configurations the pipeline cannot run with."""
    if settings.cv_folds < 2:
        raise ValueError("cv_folds must be at least 2")
    if settings.knn_k < 1 or settings.kmeans_k < 1:
        raise ValueError("knn_k and kmeans_k must be at least 1")
    if settings.stay_learning_rate <= 0 or settings.stay_iterations < 1:
        raise ValueError("stay_learning_rate must be positive and stay_iterations at least 1")
    if settings.kmeans_max_iterations < 1:
        raise ValueError("kmeans_max_iterations must be at least 1")
    if settings.peak_month_multiplier <= 0:
        raise ValueError("peak_month_multiplier must be positive")
    bad_months = [m for m in settings.peak_season_months if not 1 <= m <= 12]
    if bad_months:
        raise ValueError(f"peak_season_months must be within 1-12, got {bad_months}")
    if settings.bbox_min_lat >= settings.bbox_max_lat or settings.bbox_min_lon >= settings.bbox_max_lon:
        raise ValueError("Bounding box minimums must be below maximums")
    if any(not 0 < f < 1 for f in settings.learning_curve_fractions):
        raise ValueError("learning_curve_fractions must be strictly between 0 and 1")
    if settings.cache_ttl_seconds < 0:
        raise ValueError("cache_ttl_seconds must be non-negative")
