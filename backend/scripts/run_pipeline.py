#!/usr/bin/env python3
"""
Standalone Pipeline Script — score a fleet from movement/location CSVs.

Usage:
  python scripts/run_pipeline.py --movements data/movements.csv --locations data/locations.csv
  python scripts/run_pipeline.py --movements data/movements.csv --tune --version v2
  python scripts/run_pipeline.py --help

Writes report.txt, recommendations.csv and recommendations.json to the
output directory, and saves the trained models under the artifact dir.
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime

import pandas as pd
import structlog

# Add backend to path so imports work
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fleet.records import (  # noqa: E402
    locations_from_frame,
    locations_to_frame,
    movements_from_frame,
    movements_to_frame,
)
from ml.dataprep import (  # noqa: E402
    aggregate_entity_features,
    build_training_dataset,
    extract_movement_features,
    latest_entity_states,
)
from ml.models import NextLocationModel  # noqa: E402
from ml.persistence import save_models  # noqa: E402
from ml.quality import assess_data_quality  # noqa: E402
from ml.recommend import RecommendationCache, RecommendationEngine  # noqa: E402
from ml.reporting import render_text_report, to_csv, to_json  # noqa: E402
from ml.train import evaluate_models, train_models, tune_hyperparameters  # noqa: E402
from ml.validate import validate_locations, validate_movements  # noqa: E402

KNN_GRID = {"k": [3, 5, 7, 9]}


def main():
    parser = argparse.ArgumentParser(
        description="FleetPilot movement recommendation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Score a fleet with default hyperparameters
  python scripts/run_pipeline.py --movements data/movements.csv --locations data/locations.csv

  # Tune the next-location model first and save as v2
  python scripts/run_pipeline.py --movements data/movements.csv --tune --version v2
        """,
    )
    parser.add_argument("--movements", required=True, help="Movement CSV (one row per movement)")
    parser.add_argument("--locations", default=None, help="Location registry CSV (optional)")
    parser.add_argument("--output-dir", default="reports", help="Where to write reports (default: reports)")
    parser.add_argument("--version", default=None, help="Model version to save (default: timestamp)")
    parser.add_argument("--as-of", default=None, help="Reference time for idle days (default: now)")
    parser.add_argument("--tune", action="store_true", help="Grid-search the next-location k first")
    parser.add_argument("--evaluate", action="store_true", help="Cross-validate all three models")
    parser.add_argument("--workers", type=int, default=1, help="Worker threads for training/scoring")
    parser.add_argument("--artifact-dir", default=None, help="Model save root (default: settings.artifact_dir)")
    parser.add_argument("--no-save", action="store_true", help="Skip saving trained models")
    parser.add_argument("--verbose", action="store_true", help="Show pipeline log events")
    args = parser.parse_args()

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO if args.verbose else logging.WARNING)
    )

    start = time.time()
    version = args.version or datetime.now().strftime("v%Y%m%d%H%M%S")
    parallel = args.workers > 1

    print("=" * 60)
    print("  FleetPilot Movement Pipeline")
    print("=" * 60)
    print(f"  Movements: {args.movements}")
    print(f"  Locations: {args.locations or 'none'}")
    print(f"  As of:     {args.as_of or 'now'}")
    print(f"  Version:   {version}")
    print()

    if not os.path.exists(args.movements):
        print(f"\n❌ Movement file not found: {args.movements}")
        return 1

    # Step 1: Load + quality
    print("Step 1/4: Loading records and scoring data quality...")
    movements = movements_from_frame(pd.read_csv(args.movements))
    validate_movements(movements_to_frame(movements))
    locations = None
    if args.locations:
        locations = locations_from_frame(pd.read_csv(args.locations))
        validate_locations(locations_to_frame(locations))

    quality = assess_data_quality(movements, locations)
    print(f"  ✓ {len(movements):,} movement records")
    print(f"  ✓ Quality score: {quality.overall_score:.2f}")
    for issue in quality.issues:
        print(f"    [{issue.severity}] {issue.category}: {issue.message}")

    # Step 2: Features + dataset
    print("\nStep 2/4: Building features and training sets...")
    features = extract_movement_features(movements, locations, reference_time=args.as_of)
    aggregates = aggregate_entity_features(features, reference_time=args.as_of)
    dataset = build_training_dataset(
        features, aggregates, total_records=len(movements), quality_score=quality.overall_score
    )
    meta = dataset.metadata
    print(f"  ✓ {meta.unique_entities} entities, {meta.unique_locations} locations")
    print(f"  ✓ {meta.classification_samples} labeled moves, {meta.clustering_samples} entity profiles")
    if meta.skipped_records:
        print(f"  ⚠ Skipped {meta.skipped_records} unusable records")

    # Step 3: Train
    print("\nStep 3/4: Training models...")
    classifier_params = {}
    if args.tune and dataset.classification:
        tuning = tune_hyperparameters(NextLocationModel, dataset.classification, KNN_GRID, max_workers=args.workers)
        if tuning.best_params:
            classifier_params = tuning.best_params
            print(f"  ✓ Best k: {tuning.best_params['k']} (accuracy {tuning.best_score:.3f})")
    models = train_models(dataset, classifier_params=classifier_params, parallel=parallel)
    for kind, model in models.as_dict().items():
        status = "ready" if model.is_ready else "untrained"
        print(f"  ✓ {kind:10} {model.name} ({status})")
    if args.evaluate:
        for kind, summary in evaluate_models(dataset).items():
            print(f"    {kind:10} CV score {summary['mean_score']:.3f} ± {summary['std_score']:.3f}")

    # Step 4: Score + report
    print("\nStep 4/4: Scoring entities and writing reports...")
    engine = RecommendationEngine.from_trained(models, cache=RecommendationCache())
    result = engine.recommend_batch(latest_entity_states(features, aggregates), max_workers=args.workers)

    os.makedirs(args.output_dir, exist_ok=True)
    report = render_text_report(result)
    with open(os.path.join(args.output_dir, "report.txt"), "w") as f:
        f.write(report)
    to_csv(result, os.path.join(args.output_dir, "recommendations.csv"))
    with open(os.path.join(args.output_dir, "recommendations.json"), "w") as f:
        f.write(to_json(result))

    saved_dir = None
    if not args.no_save:
        saved_dir = save_models(
            models,
            version,
            artifact_dir=args.artifact_dir,
            extra_metadata={"dataset": os.path.basename(args.movements)},
        )

    print("\n" + report)
    print("\n" + "=" * 60)
    print("  ✅ Pipeline Complete!")
    print("=" * 60)
    print(f"  Reports:   {os.path.abspath(args.output_dir)}")
    print(f"  Models:    {saved_dir or 'not saved'}")
    print(f"  Time:      {time.time() - start:.1f}s")
    print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
