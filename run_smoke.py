"""Run a simple smoke test of the retrieval pipeline without pytest.

Creates temporary directories with generated images and runs the main flow
twice: the first run trains the vocabulary and builds the index, the second
reuses the persisted index.
"""
import tempfile
from pathlib import Path

from PIL import Image, ImageDraw

from place_recall import pipeline
from place_recall.report import load_report


def _write_scene(path: Path, seed: int) -> None:
    img = Image.new("L", (320, 240), color=40 + seed * 30)
    draw = ImageDraw.Draw(img)
    for i in range(30):
        x = (i * 37 * (seed + 3)) % 280
        y = (i * 53 * (seed + 5)) % 200
        draw.rectangle((x, y, x + 12 + i % 20, y + 10 + (i * seed) % 25), fill=(i * 47 + seed * 90) % 256)
    img.save(path)


def run():
    with tempfile.TemporaryDirectory() as mem_dir, tempfile.TemporaryDirectory() as tgt_dir, tempfile.TemporaryDirectory() as out_dir:
        memp = Path(mem_dir)
        tgtp = Path(tgt_dir)
        outp = Path(out_dir)
        for i in range(3):
            _write_scene(memp / f"place_{i}.png", seed=i)
        _write_scene(tgtp / "visit_1.png", seed=1)

        config = pipeline.PipelineConfig(
            voc_path=str(outp / "voc.npz"),
            index_path=str(outp / "db.sqlite"),
            report_path=str(outp / "report.json"),
            sort_files=True,
        )
        print("First run (build)...")
        pipeline.run(memp, tgtp, 2, config)
        first = load_report(config.report_path)
        print("Second run (reuse)...")
        pipeline.run(memp, tgtp, 2, config)
        second = load_report(config.report_path)
        print(f"Report: {first}")
        print(f"Smoke run complete. Reports identical: {first == second}")


if __name__ == "__main__":
    run()
