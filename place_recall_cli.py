#!/usr/bin/env python3
"""CLI for running the place retrieval pipeline.

Usage example:
  python place_recall_cli.py ./memory ./targets 5 --out ./reports/report.json
"""
import argparse
import logging
import sys
from pathlib import Path

from place_recall import features, vocabulary
from place_recall.report import CollisionPolicy


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Retrieve the most similar memory images for each target image")
    p.add_argument("memory_dir", metavar="MEMORY_DIR")
    p.add_argument("target_dir", metavar="TARGET_IMG_DIR")
    p.add_argument("top_n", metavar="TOP_N", type=int)
    p.add_argument("--voc_path", default="small_voc.npz", help="Vocabulary file, trained if missing")
    p.add_argument("--index_db", default="small_db.sqlite", help="Index file, built if missing")
    p.add_argument("--out", default="report.json", help="Path of the JSON report")
    p.add_argument("--rebuild_index", action="store_true", help="Rebuild the index even if the file exists")
    p.add_argument("--sorted", action="store_true", help="Process files sorted by name instead of directory order")
    p.add_argument("--k", type=int, default=vocabulary.VOCAB_K, help="Vocabulary branching factor")
    p.add_argument("--levels", type=int, default=vocabulary.VOCAB_LEVELS, help="Vocabulary depth")
    p.add_argument(
        "--weighting",
        choices=[w.value for w in vocabulary.WeightingType],
        default=vocabulary.VOCAB_WEIGHTING.value,
    )
    p.add_argument(
        "--scoring",
        choices=[s.value for s in vocabulary.ScoringType],
        default=vocabulary.VOCAB_SCORING.value,
    )
    p.add_argument("--orb_max_features", type=int, default=features.ORB_MAX_FEATURES)
    p.add_argument(
        "--collision_policy",
        choices=[c.value for c in CollisionPolicy],
        default=CollisionPolicy.TOLERATE.value,
        help="What to do when two images share a file name",
    )
    p.add_argument("--log_level", default="INFO")
    p.add_argument("--no_progress", action="store_true", help="Disable progress bars")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    from place_recall import indexer, pipeline, report

    print(f"Memory: {args.memory_dir}  Targets: {args.target_dir}  Top N: {args.top_n}")
    try:
        config = pipeline.PipelineConfig(
            voc_path=args.voc_path,
            index_path=args.index_db,
            report_path=args.out,
            vocab_params=vocabulary.VocabularyParams(
                k=args.k,
                levels=args.levels,
                weighting=vocabulary.WeightingType(args.weighting),
                scoring=vocabulary.ScoringType(args.scoring),
            ),
            orb_max_features=args.orb_max_features,
            sort_files=args.sorted,
            collision_policy=CollisionPolicy(args.collision_policy),
            force_rebuild=args.rebuild_index,
            progress=not args.no_progress,
        )
        writer = pipeline.run(Path(args.memory_dir), Path(args.target_dir), args.top_n, config)
    except (
        FileNotFoundError,
        ValueError,
        vocabulary.VocabularyError,
        indexer.IndexFormatError,
        report.NameCollisionError,
    ) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Done. {len(writer)} targets reported. Report: {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
