"""Feature ingestion: ORB descriptors for every image in a directory.

This module implements:
- compute_orb_descriptors(image_path, max_features) -> (n, 32) uint8 array
- list_image_files(img_dir, sort) -> regular files, non-recursive
- load_image_descriptors(image_path, max_features) -> ImageDescriptors
- load_corpus(img_dir, max_features, sort) -> Corpus

Files are taken in directory-iteration order (``os.scandir``), which depends on
the filesystem and is not reproducible across platforms. That order becomes
the corpus order, and therefore the index id order, for the rest of the
pipeline. Pass ``sort=True`` to hold it fixed.

Images that cannot be decoded or yield no keypoints are logged and kept with an
empty descriptor array so that one bad file never aborts a run.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Sequence, Tuple, Union
import logging
import os

import cv2
import numpy as np
from tqdm import tqdm

from place_recall.report import to_external_id

LOGGER = logging.getLogger(__name__)

ORB_MAX_FEATURES = int(os.environ.get("PLREC_ORB_MAX_FEATURES", "500"))
ORB_DESCRIPTOR_BYTES = 32


def _empty_descriptors() -> np.ndarray:
    return np.zeros((0, ORB_DESCRIPTOR_BYTES), dtype=np.uint8)


@dataclass(frozen=True, eq=False)
class ImageDescriptors:
    path: str
    descriptors: np.ndarray

    @property
    def name(self) -> str:
        return to_external_id(self.path)

    @property
    def empty(self) -> bool:
        return self.descriptors is None or len(self.descriptors) == 0


class Corpus(Sequence):
    """Ordered (path, descriptors) records.

    Position ``i`` in a corpus is the id the image gets when added to an
    ``ImageDatabase``, so paths and descriptors travel together and are never
    reordered independently.
    """

    def __init__(self, images: Sequence[ImageDescriptors] = ()) -> None:
        self._images: Tuple[ImageDescriptors, ...] = tuple(images)

    def __len__(self) -> int:
        return len(self._images)

    def __getitem__(self, i):
        return self._images[i]

    def __iter__(self) -> Iterator[ImageDescriptors]:
        return iter(self._images)

    def __repr__(self) -> str:
        return f"Corpus({len(self._images)} images)"

    @property
    def paths(self) -> List[str]:
        return [img.path for img in self._images]

    @property
    def names(self) -> List[str]:
        return [img.name for img in self._images]

    @property
    def descriptors(self) -> List[np.ndarray]:
        return [img.descriptors for img in self._images]

    @property
    def n_descriptors(self) -> int:
        return sum(len(img.descriptors) for img in self._images)


def compute_orb_descriptors(image_path: Union[str, Path], max_features: int = ORB_MAX_FEATURES) -> np.ndarray:
    """Extract ORB descriptors from the grayscale decode of ``image_path``.

    Returns an (n, 32) uint8 array in detector order; (0, 32) when no keypoint
    was found. Raises IOError when the file cannot be decoded.
    """
    img = cv2.imread(str(image_path), cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise IOError(f"Unable to read image: {image_path}")
    orb = cv2.ORB_create(nfeatures=max_features)
    _, descs = orb.detectAndCompute(img, None)
    if descs is None:
        return _empty_descriptors()
    return descs


def list_image_files(img_dir: Union[str, Path], sort: bool = False) -> List[Path]:
    img_dir = Path(img_dir)
    if not img_dir.is_dir():
        raise FileNotFoundError(f"Image directory not found: {img_dir}")
    with os.scandir(img_dir) as it:
        files = [Path(entry.path) for entry in it if entry.is_file()]
    if sort:
        files.sort(key=lambda p: p.name)
    return files


def load_image_descriptors(image_path: Union[str, Path], max_features: int = ORB_MAX_FEATURES) -> ImageDescriptors:
    try:
        descs = compute_orb_descriptors(image_path, max_features=max_features)
    except (IOError, cv2.error) as e:
        LOGGER.warning("Skipping features for %s: %s", image_path, e)
        return ImageDescriptors(path=str(image_path), descriptors=_empty_descriptors())
    if len(descs) == 0:
        LOGGER.warning("No keypoints detected in %s", image_path)
    return ImageDescriptors(path=str(image_path), descriptors=descs)


def load_corpus(
    img_dir: Union[str, Path],
    max_features: int = ORB_MAX_FEATURES,
    sort: bool = False,
    progress: bool = True,
) -> Corpus:
    """Extract descriptors for every regular file directly under ``img_dir``."""
    files = list_image_files(img_dir, sort=sort)
    LOGGER.info("Extracting ORB features from %d files in %s", len(files), img_dir)
    images = []
    for p in tqdm(files, desc=f"Extracting {Path(img_dir).name}", disable=not progress):
        LOGGER.debug("Found img: %s", p)
        images.append(load_image_descriptors(p, max_features=max_features))
    return Corpus(images)
