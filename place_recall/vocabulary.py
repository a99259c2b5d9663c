"""Hierarchical visual vocabulary (vocabulary tree) for bag-of-words retrieval.

A vocabulary is a k-ary tree of cluster centers ``levels`` deep, trained by
running k-means on the descriptors that fall into each node. Leaves are the
visual words. ``transform`` walks each descriptor down the tree and returns a
sparse weighted histogram (``{word_id: weight}``); ``score`` compares two of
them, higher meaning more similar.

Environment overrides for the defaults:
- PLREC_VOCAB_K          branching factor (9)
- PLREC_VOCAB_LEVELS     depth (3)
- PLREC_VOCAB_WEIGHTING  tf_idf | tf | idf | binary
- PLREC_VOCAB_SCORING    l1_norm | l2_norm | chi_square | kl | bhattacharyya | dot_product
"""
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import io
import logging
import math
import os
import zipfile

import numpy as np
from sklearn.cluster import KMeans

from place_recall.storage import FileStorage

LOGGER = logging.getLogger(__name__)

BowVector = Dict[int, float]

LOG_EPS = math.log(np.finfo(np.float64).eps)


class VocabularyError(Exception):
    """Raised when a vocabulary cannot be trained, read or parsed."""


class WeightingType(str, Enum):
    TF_IDF = "tf_idf"
    TF = "tf"
    IDF = "idf"
    BINARY = "binary"


class ScoringType(str, Enum):
    L1_NORM = "l1_norm"
    L2_NORM = "l2_norm"
    CHI_SQUARE = "chi_square"
    KL = "kl"
    BHATTACHARYYA = "bhattacharyya"
    DOT_PRODUCT = "dot_product"


VOCAB_K = int(os.environ.get("PLREC_VOCAB_K", "9"))
VOCAB_LEVELS = int(os.environ.get("PLREC_VOCAB_LEVELS", "3"))
VOCAB_WEIGHTING = WeightingType(os.environ.get("PLREC_VOCAB_WEIGHTING", "tf_idf").lower())
VOCAB_SCORING = ScoringType(os.environ.get("PLREC_VOCAB_SCORING", "l1_norm").lower())

_L1_SCORINGS = (ScoringType.L1_NORM, ScoringType.CHI_SQUARE, ScoringType.KL, ScoringType.BHATTACHARYYA)
_ACCUMULATING = (WeightingType.TF, WeightingType.TF_IDF)


@dataclass(frozen=True)
class VocabularyParams:
    k: int = VOCAB_K
    levels: int = VOCAB_LEVELS
    weighting: WeightingType = VOCAB_WEIGHTING
    scoring: ScoringType = VOCAB_SCORING
    random_state: int = 0

    def __post_init__(self):
        if self.k < 2:
            raise ValueError(f"branching factor must be >= 2, got {self.k}")
        if self.levels < 1:
            raise ValueError(f"depth must be >= 1, got {self.levels}")
        object.__setattr__(self, "weighting", WeightingType(self.weighting))
        object.__setattr__(self, "scoring", ScoringType(self.scoring))


def _nearest(x: np.ndarray, centers: np.ndarray) -> np.ndarray:
    d = ((x[:, None, :] - centers[None, :, :]) ** 2).sum(axis=2)
    return np.argmin(d, axis=1)


class Vocabulary:
    """Trained vocabulary tree.

    Node 0 is the root. Children of node ``n`` are
    ``child_index[child_offsets[n]:child_offsets[n + 1]]``; a node without
    children is a leaf and ``word_of_node[n]`` is its word id (-1 otherwise).
    """

    def __init__(
        self,
        params: VocabularyParams,
        centers: np.ndarray,
        child_offsets: np.ndarray,
        child_index: np.ndarray,
        word_of_node: np.ndarray,
        word_weights: np.ndarray,
        n_training_images: int = 0,
    ):
        self.params = params
        self.centers = np.asarray(centers, dtype=np.float32)
        self.child_offsets = np.asarray(child_offsets, dtype=np.int64)
        self.child_index = np.asarray(child_index, dtype=np.int64)
        self.word_of_node = np.asarray(word_of_node, dtype=np.int64)
        self.word_weights = np.asarray(word_weights, dtype=np.float64)
        self.n_training_images = int(n_training_images)
        self._n_children = np.diff(self.child_offsets)

    @property
    def n_words(self) -> int:
        return int(len(self.word_weights))

    @property
    def descriptor_size(self) -> int:
        return int(self.centers.shape[1])

    def __str__(self) -> str:
        p = self.params
        return (
            f"Vocabulary: k = {p.k}, L = {p.levels}, Weighting = {p.weighting.value}, "
            f"Scoring = {p.scoring.value}, Number of words = {self.n_words}"
        )

    # training

    @classmethod
    def create(cls, training: Sequence[np.ndarray], params: Optional[VocabularyParams] = None) -> "Vocabulary":
        """Train on one descriptor array per image."""
        params = params or VocabularyParams()
        non_empty = [np.asarray(d) for d in training if d is not None and len(d) > 0]
        if not non_empty:
            raise VocabularyError("Cannot train a vocabulary without descriptors")
        data = np.vstack(non_empty).astype(np.float32)
        LOGGER.info(
            "Creating a %d^%d vocabulary from %d descriptors of %d images",
            params.k, params.levels, len(data), len(training),
        )

        centers: List[np.ndarray] = [np.zeros(data.shape[1], dtype=np.float32)]
        children: List[List[int]] = [[]]
        depth: List[int] = [0]
        queue = deque([(0, np.arange(len(data)))])
        while queue:
            node, rows = queue.popleft()
            node_centers, labels = cls._cluster(data[rows], params)
            for c, center in enumerate(node_centers):
                child = len(centers)
                centers.append(center.astype(np.float32))
                children.append([])
                depth.append(depth[node] + 1)
                children[node].append(child)
                child_rows = rows[labels == c]
                if depth[child] < params.levels and len(child_rows) > 0:
                    queue.append((child, child_rows))

        child_offsets = np.zeros(len(centers) + 1, dtype=np.int64)
        child_offsets[1:] = np.cumsum([len(c) for c in children])
        child_index = np.array([c for kids in children for c in kids], dtype=np.int64)
        word_of_node = np.full(len(centers), -1, dtype=np.int64)
        leaves = [n for n, kids in enumerate(children) if not kids]
        word_of_node[leaves] = np.arange(len(leaves))

        voc = cls(
            params,
            np.stack(centers),
            child_offsets,
            child_index,
            word_of_node,
            np.ones(len(leaves), dtype=np.float64),
            n_training_images=len(training),
        )
        voc._set_word_weights(training)
        return voc

    @staticmethod
    def _cluster(x: np.ndarray, params: VocabularyParams):
        uniq = np.unique(x, axis=0)
        if len(uniq) <= params.k:
            return uniq, _nearest(x, uniq)
        km = KMeans(n_clusters=params.k, n_init=3, random_state=params.random_state)
        km.fit(x)
        return km.cluster_centers_, km.labels_

    def _set_word_weights(self, training: Sequence[np.ndarray]) -> None:
        if self.params.weighting not in (WeightingType.TF_IDF, WeightingType.IDF):
            return
        n_images = len(training)
        doc_freq = np.zeros(self.n_words, dtype=np.int64)
        for descs in training:
            if descs is None or len(descs) == 0:
                continue
            doc_freq[np.unique(self.lookup(descs))] += 1
        weights = np.zeros(self.n_words, dtype=np.float64)
        seen = doc_freq > 0
        weights[seen] = np.log(n_images / doc_freq[seen])
        self.word_weights = weights

    # quantization

    def lookup(self, descriptors: np.ndarray) -> np.ndarray:
        """Word id for every descriptor row."""
        x = np.asarray(descriptors, dtype=np.float32)
        if x.ndim != 2 or x.shape[1] != self.descriptor_size:
            raise ValueError(
                f"expected descriptors of size {self.descriptor_size}, got shape {x.shape}"
            )
        node = np.zeros(len(x), dtype=np.int64)
        while True:
            active = self._n_children[node] > 0
            if not active.any():
                break
            for parent in np.unique(node[active]):
                rows = np.flatnonzero(node == parent)
                kids = self.child_index[self.child_offsets[parent]:self.child_offsets[parent + 1]]
                node[rows] = kids[_nearest(x[rows], self.centers[kids])]
        return self.word_of_node[node]

    def transform(self, descriptors: np.ndarray) -> BowVector:
        if descriptors is None or len(descriptors) == 0:
            return {}
        weighting = self.params.weighting
        scoring = self.params.scoring
        bow: BowVector = {}
        for word in self.lookup(descriptors).tolist():
            w = float(self.word_weights[word])
            if w <= 0:
                continue
            if weighting in _ACCUMULATING:
                bow[word] = bow.get(word, 0.0) + w
            elif word not in bow:
                bow[word] = w

        if scoring in _L1_SCORINGS:
            norm = sum(abs(v) for v in bow.values())
        elif scoring == ScoringType.L2_NORM:
            norm = math.sqrt(sum(v * v for v in bow.values()))
        elif weighting in _ACCUMULATING:
            norm = float(len(descriptors))
        else:
            norm = 0.0
        if norm > 0:
            bow = {word: v / norm for word, v in bow.items()}
        return dict(sorted(bow.items()))

    def score(self, a: BowVector, b: BowVector) -> float:
        """Similarity of two transformed vectors; larger is more similar."""
        if not a:
            return 0.0
        scoring = self.params.scoring
        if scoring == ScoringType.KL:
            # a word missing from b costs as much as an epsilon-weighted one,
            # so an empty b gets the worst score instead of a perfect 0
            div = 0.0
            for w, v in a.items():
                if v <= 0:
                    continue
                if b.get(w, 0.0) > 0:
                    div += v * math.log(v / b[w])
                else:
                    div += v * (math.log(v) - LOG_EPS)
            return -div
        if not b:
            return 0.0
        common = [w for w in a if w in b]
        if scoring == ScoringType.L1_NORM:
            s = sum(abs(a[w]) + abs(b[w]) - abs(a[w] - b[w]) for w in common)
            return 0.5 * s
        if scoring == ScoringType.L2_NORM:
            dot = sum(a[w] * b[w] for w in common)
            if dot >= 1.0:
                return 1.0
            return 1.0 - math.sqrt(1.0 - dot)
        if scoring == ScoringType.CHI_SQUARE:
            return 2.0 * sum(a[w] * b[w] / (a[w] + b[w]) for w in common if a[w] + b[w] != 0)
        if scoring == ScoringType.BHATTACHARYYA:
            return sum(math.sqrt(a[w] * b[w]) for w in common if a[w] * b[w] > 0)
        return sum(a[w] * b[w] for w in common)

    # persistence

    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        np.savez_compressed(
            buf,
            k=np.int64(self.params.k),
            levels=np.int64(self.params.levels),
            weighting=np.array(self.params.weighting.value),
            scoring=np.array(self.params.scoring.value),
            random_state=np.int64(self.params.random_state),
            centers=self.centers,
            child_offsets=self.child_offsets,
            child_index=self.child_index,
            word_of_node=self.word_of_node,
            word_weights=self.word_weights,
            n_training_images=np.int64(self.n_training_images),
        )
        return buf.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Vocabulary":
        try:
            with np.load(io.BytesIO(data), allow_pickle=False) as z:
                params = VocabularyParams(
                    k=int(z["k"]),
                    levels=int(z["levels"]),
                    weighting=WeightingType(str(z["weighting"])),
                    scoring=ScoringType(str(z["scoring"])),
                    random_state=int(z["random_state"]),
                )
                return cls(
                    params,
                    z["centers"],
                    z["child_offsets"],
                    z["child_index"],
                    z["word_of_node"],
                    z["word_weights"],
                    n_training_images=int(z["n_training_images"]),
                )
        except (OSError, EOFError, KeyError, ValueError, zipfile.BadZipFile) as e:
            raise VocabularyError(f"Corrupt vocabulary data: {e}") from e

    def save(self, path: Union[str, Path], storage=None) -> None:
        storage = storage or FileStorage()
        storage.write(path, self.to_bytes())

    @classmethod
    def load(cls, path: Union[str, Path], storage=None) -> "Vocabulary":
        storage = storage or FileStorage()
        if not storage.exists(path):
            raise VocabularyError(f"Vocabulary file not found: {path}")
        return cls.from_bytes(storage.read(path))


def train_or_load(
    path: Union[str, Path],
    memory_corpus,
    params: Optional[VocabularyParams] = None,
    storage=None,
) -> Vocabulary:
    """Load the vocabulary persisted at ``path`` or train one on ``memory_corpus``.

    Only the memory images are ever used for training; when a file already
    exists the corpus is not looked at.
    """
    storage = storage or FileStorage()
    if storage.exists(path):
        LOGGER.info("Loading vocabulary from %s", path)
        voc = Vocabulary.load(path, storage)
    else:
        voc = Vocabulary.create(memory_corpus.descriptors, params)
        LOGGER.info("Saving vocabulary to %s", path)
        voc.save(path, storage)
    LOGGER.info("%s", voc)
    return voc
