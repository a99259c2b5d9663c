import shutil
from pathlib import Path

import pytest

import place_recall_cli
from place_recall.report import load_report


@pytest.mark.parametrize("argv", [[], ["mem"], ["mem", "tgt"], ["mem", "tgt", "2", "extra"]])
def test_wrong_argument_count_exits_with_usage(argv, capsys):
    with pytest.raises(SystemExit) as exc:
        place_recall_cli.parse_args(argv)
    assert exc.value.code != 0
    assert "usage" in capsys.readouterr().err.lower()


def test_non_numeric_top_n_is_fatal(capsys):
    with pytest.raises(SystemExit) as exc:
        place_recall_cli.parse_args(["mem", "tgt", "two"])
    assert exc.value.code != 0
    assert "TOP_N" in capsys.readouterr().err


def test_missing_memory_dir_returns_error(tmp_path: Path, capsys):
    code = place_recall_cli.main([
        str(tmp_path / "missing"),
        str(tmp_path),
        "2",
        "--voc_path", str(tmp_path / "voc.npz"),
        "--index_db", str(tmp_path / "db.sqlite"),
        "--out", str(tmp_path / "report.json"),
        "--no_progress",
    ])
    assert code == 1
    assert "Error:" in capsys.readouterr().err
    assert not (tmp_path / "report.json").exists()


def test_main_writes_report(tmp_path: Path, make_image):
    pytest.importorskip("cv2")
    memory = tmp_path / "memory"
    targets = tmp_path / "targets"
    for i, name in enumerate(["x.jpg", "y.jpg", "z.jpg"]):
        make_image(memory / name, seed=20 + i)
    targets.mkdir()
    shutil.copyfile(memory / "y.jpg", targets / "query.jpg")
    out = tmp_path / "out" / "report.json"
    code = place_recall_cli.main([
        str(memory),
        str(targets),
        "1",
        "--voc_path", str(tmp_path / "voc.npz"),
        "--index_db", str(tmp_path / "db.sqlite"),
        "--out", str(out),
        "--sorted",
        "--k", "5",
        "--levels", "2",
        "--no_progress",
    ])
    assert code == 0
    assert load_report(out) == {"query.jpg": [{"file_name": "y.jpg", "score": pytest.approx(1.0)}]}
