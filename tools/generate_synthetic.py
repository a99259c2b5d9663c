"""Generate a synthetic place-recognition dataset.

Creates `synth_memory` and `synth_targets` under the output directory and a
labels CSV `synth_labels.csv` mapping every target to the memory image it was
derived from (empty for distractors).

Usage:
  python tools/generate_synthetic.py --out_dir ./data --count 5
"""
import argparse
from pathlib import Path
from PIL import Image, ImageDraw, ImageEnhance
import random
import csv


def _scene(rng: random.Random, size=(400, 300)) -> Image.Image:
    img = Image.new('RGB', size, tuple(rng.randint(90, 200) for _ in range(3)))
    draw = ImageDraw.Draw(img)
    w, h = size
    for _ in range(60):
        x0, x1 = sorted(rng.randint(0, w) for _ in range(2))
        y0, y1 = sorted(rng.randint(0, h) for _ in range(2))
        color = tuple(rng.randint(0, 255) for _ in range(3))
        if rng.random() < 0.5:
            draw.rectangle((x0, y0, x1 + 6, y1 + 6), fill=color)
        else:
            draw.ellipse((x0, y0, x1 + 6, y1 + 6), fill=color)
    return img


def generate(out_dir: Path, count: int = 5, seed: int = 0):
    rng = random.Random(seed)
    memory = out_dir / 'synth_memory'
    targets = out_dir / 'synth_targets'
    memory.mkdir(parents=True, exist_ok=True)
    targets.mkdir(parents=True, exist_ok=True)

    labels = []
    for i in range(1, count + 1):
        img = _scene(rng)
        base = memory / f'place_{i}.jpg'
        img.save(base)

        # revisit from a slightly different viewpoint
        view = img.crop((30, 20, 370, 280)).resize((400, 300))
        view.save(targets / f'visit_{i}_view.jpg')
        labels.append((f'visit_{i}_view.jpg', base.name))

        # small rotation
        rot = img.rotate(8, expand=False, fillcolor=(128, 128, 128))
        rot.save(targets / f'visit_{i}_rot.jpg')
        labels.append((f'visit_{i}_rot.jpg', base.name))

        # lighting change
        bright = ImageEnhance.Brightness(img).enhance(1.25)
        bright.save(targets / f'visit_{i}_bright.jpg')
        labels.append((f'visit_{i}_bright.jpg', base.name))

        # partial occlusion
        occ = img.copy()
        ImageDraw.Draw(occ).rectangle((150, 100, 250, 180), fill=(255, 255, 255))
        occ.save(targets / f'visit_{i}_occluded.jpg')
        labels.append((f'visit_{i}_occluded.jpg', base.name))

    # places never seen in memory
    for j in range(1, count + 1):
        _scene(rng).save(targets / f'unseen_{j}.jpg')
        labels.append((f'unseen_{j}.jpg', ''))

    labp = out_dir / 'synth_labels.csv'
    with open(labp, 'w', newline='', encoding='utf-8') as f:
        w = csv.writer(f)
        w.writerow(['target_image', 'memory_image'])
        for target_name, memory_name in labels:
            w.writerow([target_name, memory_name])

    print('Synthetic dataset created:')
    print(' MEMORY:', memory)
    print(' TARGETS:', targets)
    print(' Labels:', labp)


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--out_dir', default='./data')
    parser.add_argument('--count', type=int, default=5)
    parser.add_argument('--seed', type=int, default=0)
    args = parser.parse_args()
    generate(Path(args.out_dir), count=args.count, seed=args.seed)
