"""
Reporting — text, CSV and JSON renderings of one batch result.

All three are pure functions of a BatchRecommendationResult; nothing is
re-queried or re-scored.
"""

import json
from typing import Any

import pandas as pd

from ml.recommend import BatchRecommendationResult, MovementRecommendation

CSV_COLUMNS = [
    "entity_id",
    "priority",
    "action",
    "best_location",
    "confidence",
    "current_location",
    "current_idle_days",
    "predicted_stay_days",
    "readiness_score",
    "cluster_name",
    "critical",
    "top_locations",
    "risk_factors",
    "opportunity_factors",
    "rationale",
    "timestamp",
]

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def _row(rec: MovementRecommendation) -> dict[str, Any]:
    primary = rec.recommendations[0] if rec.recommendations else None
    return {
        "entity_id": rec.entity_id,
        "priority": rec.priority,
        "action": rec.best_action.action,
        "best_location": rec.best_action.location_id or "",
        "confidence": round(rec.best_action.confidence, 4),
        "current_location": rec.current_location,
        "current_idle_days": round(rec.current_idle_days, 2),
        "predicted_stay_days": round(rec.predicted_stay_days, 2),
        "readiness_score": round(rec.readiness_score, 4),
        "cluster_name": rec.cluster_name,
        "critical": rec.critical,
        "top_locations": ";".join(s.location_id for s in (primary.suggested_locations if primary else ())),
        "risk_factors": "; ".join(rec.risk_factors),
        "opportunity_factors": "; ".join(rec.opportunity_factors),
        "rationale": primary.rationale if primary else "",
        "timestamp": rec.timestamp.isoformat() if rec.timestamp else "",
    }


def recommendations_frame(result: BatchRecommendationResult) -> pd.DataFrame:
    """One row per entity recommendation, in batch order."""
    return pd.DataFrame([_row(p.recommendation) for p in result.predictions], columns=CSV_COLUMNS)


def to_csv(result: BatchRecommendationResult, path: str | None = None) -> str:
    """Render the batch as CSV; also writes it to path when given."""
    text = recommendations_frame(result).to_csv(index=False)
    if path:
        with open(path, "w", newline="") as f:
            f.write(text)
    return text


def to_json(result: BatchRecommendationResult, indent: int | None = 2) -> str:
    return json.dumps(result.to_dict(), indent=indent, default=str)


def render_text_report(result: BatchRecommendationResult, max_rows: int = 20) -> str:
    """Multi-section human-readable report."""
    s = result.summary
    lines = [
        "=" * 60,
        "  FLEET MOVEMENT RECOMMENDATIONS",
        "=" * 60,
        f"  Generated: {result.generated_at.isoformat()}",
        "  Models:    " + ", ".join(f"{n} v{v}" for n, v in sorted(result.model_versions.items())),
        "",
        "SUMMARY",
        "-" * 60,
        f"  Entities scored:        {s.total_entities}",
        f"  Needs immediate action: {s.needs_immediate_action}",
        f"  Ready to move:          {s.ready_to_move}",
        f"  Can wait:               {s.can_wait}",
        f"  Critical:               {len(s.critical_entity_ids)}",
    ]

    if s.critical_entity_ids:
        lines += ["", "CRITICAL ENTITIES", "-" * 60]
        lines += [f"  ! {entity_id}" for entity_id in s.critical_entity_ids]

    ranked = sorted(
        (p.recommendation for p in result.predictions),
        key=lambda r: (PRIORITY_ORDER[r.priority], -r.current_idle_days, r.entity_id),
    )
    lines += ["", "RECOMMENDATIONS", "-" * 60]
    if not ranked:
        lines.append("  (no entities)")
    for rec in ranked[:max_rows]:
        lines.append(
            f"  [{rec.priority.upper():6}] {rec.entity_id}: {rec.best_action.summary} "
            f"(idle {rec.current_idle_days:.0f}d / typical {rec.predicted_stay_days:.0f}d)"
        )
        for risk in rec.risk_factors:
            lines.append(f"      risk: {risk}")
        for opportunity in rec.opportunity_factors:
            lines.append(f"      opportunity: {opportunity}")
    if len(ranked) > max_rows:
        lines.append(f"  ... {len(ranked) - max_rows} more")

    lines.append("=" * 60)
    return "\n".join(lines)
