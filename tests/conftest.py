import numpy as np
import pytest
from pathlib import Path
from PIL import Image, ImageDraw

from place_recall.features import Corpus, ImageDescriptors


def _draw_textured(path: Path, seed: int, size=(320, 240)) -> Path:
    rng = np.random.default_rng(seed)
    w, h = size
    img = Image.new("L", size, color=int(rng.integers(0, 256)))
    draw = ImageDraw.Draw(img)
    for _ in range(40):
        x0, x1 = sorted(int(v) for v in rng.integers(0, w, 2))
        y0, y1 = sorted(int(v) for v in rng.integers(0, h, 2))
        fill = int(rng.integers(0, 256))
        if rng.random() < 0.5:
            draw.rectangle((x0, y0, x1 + 4, y1 + 4), fill=fill)
        else:
            draw.ellipse((x0, y0, x1 + 4, y1 + 4), fill=fill)
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(path)
    return path


@pytest.fixture()
def make_image():
    """Return a function writing a deterministic textured image for a seed."""
    return _draw_textured


def _clustered_corpus(n_images: int, per_cluster: int = 20, clusters: int = 3, seed: int = 0) -> Corpus:
    rng = np.random.default_rng(seed)
    centers = rng.integers(0, 256, size=(n_images * clusters, 32))
    images = []
    for i in range(n_images):
        rows = []
        for c in range(clusters):
            noise = rng.integers(-4, 5, size=(per_cluster, 32))
            rows.append(np.clip(centers[i * clusters + c] + noise, 0, 255))
        descs = np.vstack(rows).astype(np.uint8)
        images.append(ImageDescriptors(path=f"/data/memory/img_{i}.png", descriptors=descs))
    return Corpus(images)


@pytest.fixture()
def descriptor_corpus() -> Corpus:
    """Five synthetic images whose descriptors form image-specific clusters."""
    return _clustered_corpus(5)
