"""Quick evaluator for the synthetic place-recognition dataset.

Usage example:
    python tools/verify_synthetic.py \
      --memory_dir data/synth_memory \
      --target_dir data/synth_targets \
      --labels data/synth_labels.csv \
      --top_n 3

The script runs the retrieval pipeline on the synthetic dataset (vocabulary
and index are kept in memory, nothing is written next to the data) and reports
recall@1 / recall@N for targets with a known source place, plus the list of
misses.
"""
import argparse
import csv
import sys
from pathlib import Path
from typing import Dict, List

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from place_recall import pipeline
from place_recall.storage import MemoryStorage
from place_recall.vocabulary import VocabularyParams


def load_labels(path: Path) -> Dict[str, str]:
    rows: Dict[str, str] = {}
    with path.open(newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        for row in reader:
            rows[row["target_image"]] = row["memory_image"]
    return rows


def evaluate(report: Dict[str, List[Dict[str, object]]], labels: Dict[str, str]) -> Dict[str, object]:
    stats = {"labelled_total": 0, "top1_hits": 0, "topn_hits": 0, "unseen_total": 0, "misses": []}
    for target, expected in labels.items():
        proposals = [p["file_name"] for p in report.get(target, [])]
        if not expected:
            stats["unseen_total"] += 1
            continue
        stats["labelled_total"] += 1
        if proposals[:1] == [expected]:
            stats["top1_hits"] += 1
        if expected in proposals:
            stats["topn_hits"] += 1
        else:
            stats["misses"].append({"image": target, "expected": expected, "proposals": proposals})
    return stats


def format_summary(stats: Dict[str, object], top_n: int) -> str:
    total = stats["labelled_total"] or 1
    lines: List[str] = [
        f"Recall@1: {stats['top1_hits']}/{stats['labelled_total']} ({stats['top1_hits']/total:.1%})",
        f"Recall@{top_n}: {stats['topn_hits']}/{stats['labelled_total']} ({stats['topn_hits']/total:.1%})",
        f"Unseen targets: {stats['unseen_total']}",
    ]
    if stats["misses"]:
        lines.append("\nMisses:")
        for miss in stats["misses"]:
            lines.append(f" - {miss['image']}: expected {miss['expected']}, got {', '.join(miss['proposals']) or 'nothing'}")
    else:
        lines.append("\nEvery labelled target found its place.")
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Evaluate retrieval on the synthetic dataset")
    p.add_argument("--memory_dir", default="data/synth_memory")
    p.add_argument("--target_dir", default="data/synth_targets")
    p.add_argument("--labels", default="data/synth_labels.csv")
    p.add_argument("--top_n", type=int, default=3)
    p.add_argument("--k", type=int, default=9)
    p.add_argument("--levels", type=int, default=3)
    return p.parse_args()


def main() -> None:
    args = parse_args()
    config = pipeline.PipelineConfig(
        report_path=None,
        vocab_params=VocabularyParams(k=args.k, levels=args.levels),
        sort_files=True,
    )
    writer = pipeline.run(Path(args.memory_dir), Path(args.target_dir), args.top_n, config, storage=MemoryStorage())
    stats = evaluate(writer.as_dict(), load_labels(Path(args.labels)))
    print(format_summary(stats, args.top_n))


if __name__ == "__main__":
    main()
