"""Image database over a vocabulary, with SQLite persistence and rebuild-or-reuse logic.

``ImageDatabase`` keeps one bag-of-words entry per memory image in insertion
order; entry ``i`` always corresponds to position ``i`` of the corpus it was
built from. ``IndexStore`` decides whether that database is loaded from disk
or built from scratch, and makes sure it is built at most once per run.
"""
from contextlib import closing
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging
import sqlite3
import tempfile

import numpy as np
from tqdm import tqdm

from place_recall.report import to_external_id
from place_recall.storage import FileStorage
from place_recall.vocabulary import BowVector, Vocabulary, VocabularyError

LOGGER = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = "1"


class IndexFormatError(Exception):
    """Raised when a persisted index is missing, corrupt or inconsistent."""


@dataclass(frozen=True)
class IndexEntry:
    entry_id: int
    name: str
    path: str
    bow: BowVector


@dataclass(frozen=True)
class QueryResult:
    entry_id: int
    score: float
    name: str


class ImageDatabase:
    def __init__(self, vocabulary: Vocabulary):
        if vocabulary is None:
            raise ValueError("An image database needs a vocabulary")
        self.vocabulary = vocabulary
        self._entries: List[IndexEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __str__(self) -> str:
        return f"Database: Entries = {len(self._entries)}, {self.vocabulary}"

    @property
    def entries(self) -> List[IndexEntry]:
        return list(self._entries)

    @property
    def names(self) -> List[str]:
        return [e.name for e in self._entries]

    def add(self, image) -> int:
        """Append ``image`` (an ``ImageDescriptors``) and return its entry id."""
        return self._append(image.path, self.vocabulary.transform(image.descriptors))

    def _append(self, path: str, bow: BowVector) -> int:
        entry_id = len(self._entries)
        self._entries.append(IndexEntry(entry_id, to_external_id(path), str(path), bow))
        return entry_id

    def query(self, descriptors: np.ndarray, top_n: int) -> List[QueryResult]:
        """Score ``descriptors`` against every entry.

        Returns at most ``top_n`` results, best first; equal scores are
        ordered by ascending entry id. A query without any weighted word
        (no descriptors, or only zero-weight words) has no results.
        """
        if top_n <= 0 or not self._entries:
            return []
        q = self.vocabulary.transform(descriptors)
        if not q:
            return []
        scored = [(self.vocabulary.score(q, e.bow), e.entry_id) for e in self._entries]
        scored.sort(key=lambda s: (-s[0], s[1]))
        return [
            QueryResult(entry_id, float(score), self._entries[entry_id].name)
            for score, entry_id in scored[:top_n]
        ]

    # persistence

    def save(self, path: Union[str, Path], storage=None) -> None:
        storage = storage or FileStorage()
        with tempfile.TemporaryDirectory() as tmp:
            db_path = Path(tmp) / "index.sqlite"
            self._write_sqlite(db_path)
            storage.write(path, db_path.read_bytes())

    @classmethod
    def load(cls, path: Union[str, Path], storage=None) -> "ImageDatabase":
        storage = storage or FileStorage()
        if not storage.exists(path):
            raise IndexFormatError(f"Index file not found: {path}")
        data = storage.read(path)
        with tempfile.TemporaryDirectory() as tmp:
            db_path = Path(tmp) / "index.sqlite"
            db_path.write_bytes(data)
            try:
                return cls._read_sqlite(db_path)
            except (sqlite3.DatabaseError, VocabularyError) as e:
                raise IndexFormatError(f"Corrupt index file {path}: {e}") from e

    def _write_sqlite(self, db_path: Path) -> None:
        conn = sqlite3.connect(str(db_path))
        with closing(conn):
            cur = conn.cursor()
            cur.execute("CREATE TABLE meta(key TEXT PRIMARY KEY, value BLOB)")
            cur.execute(
                "CREATE TABLE entries(\n"
                "    entry_id INTEGER PRIMARY KEY,\n"
                "    name TEXT,\n"
                "    path TEXT\n"
                ")"
            )
            cur.execute(
                "CREATE TABLE words(\n"
                "    entry_id INTEGER,\n"
                "    word_id INTEGER,\n"
                "    weight REAL\n"
                ")"
            )
            cur.executemany(
                "INSERT INTO meta(key,value) VALUES (?,?)",
                [
                    ("format_version", INDEX_FORMAT_VERSION),
                    ("vocabulary", sqlite3.Binary(self.vocabulary.to_bytes())),
                ],
            )
            cur.executemany(
                "INSERT INTO entries(entry_id,name,path) VALUES (?,?,?)",
                [(e.entry_id, e.name, e.path) for e in self._entries],
            )
            cur.executemany(
                "INSERT INTO words(entry_id,word_id,weight) VALUES (?,?,?)",
                [(e.entry_id, w, v) for e in self._entries for w, v in e.bow.items()],
            )
            cur.execute("CREATE INDEX idx_words_entry ON words(entry_id)")
            conn.commit()

    @classmethod
    def _read_sqlite(cls, db_path: Path) -> "ImageDatabase":
        conn = sqlite3.connect(str(db_path))
        with closing(conn):
            cur = conn.cursor()
            meta: Dict[str, Any] = dict(cur.execute("SELECT key,value FROM meta"))
            if meta.get("format_version") != INDEX_FORMAT_VERSION:
                raise IndexFormatError(f"Unsupported index format: {meta.get('format_version')!r}")
            if "vocabulary" not in meta:
                raise IndexFormatError("Index file has no embedded vocabulary")
            db = cls(Vocabulary.from_bytes(bytes(meta["vocabulary"])))
            bows: Dict[int, BowVector] = {}
            for entry_id, word_id, weight in cur.execute(
                "SELECT entry_id,word_id,weight FROM words ORDER BY entry_id, word_id"
            ):
                bows.setdefault(entry_id, {})[word_id] = weight
            rows = cur.execute("SELECT entry_id,name,path FROM entries ORDER BY entry_id").fetchall()
        for expected, (entry_id, name, path) in enumerate(rows):
            if entry_id != expected:
                raise IndexFormatError(f"Entry ids are not contiguous: expected {expected}, found {entry_id}")
            db._entries.append(IndexEntry(entry_id, name, path, bows.get(entry_id, {})))
        return db


class IndexState(Enum):
    NEEDS_BUILD = "needs_build"
    LOADING = "loading"
    READY = "ready"


class IndexStore:
    """Owns the build-or-load decision for the database persisted at ``path``.

    NEEDS_BUILD -> READY   build from the memory corpus, then persist
    LOADING     -> READY   read the persisted file (vocabulary included)
    READY                  further calls return the same database
    """

    def __init__(self, path: Union[str, Path], storage=None, force_rebuild: bool = False):
        self.path = path
        self.storage = storage or FileStorage()
        self.force_rebuild = force_rebuild
        self.state: Optional[IndexState] = None
        self.database: Optional[ImageDatabase] = None

    def resolve(self) -> IndexState:
        if self.state is None:
            if not self.force_rebuild and self.storage.exists(self.path):
                self.state = IndexState.LOADING
            else:
                self.state = IndexState.NEEDS_BUILD
        return self.state

    def build_or_load(self, vocabulary: Optional[Vocabulary] = None, memory_corpus=None, progress: bool = False) -> ImageDatabase:
        state = self.resolve()
        if state == IndexState.READY:
            return self.database
        if state == IndexState.LOADING:
            LOGGER.info("Loading index from %s", self.path)
            db = ImageDatabase.load(self.path, self.storage)
        else:
            if vocabulary is None:
                raise ValueError("Building an index requires a vocabulary")
            db = build_database(vocabulary, memory_corpus or (), progress=progress)
            LOGGER.info("Saving index to %s", self.path)
            db.save(self.path, self.storage)
        self.database = db
        self.state = IndexState.READY
        LOGGER.info("%s", db)
        return db


def build_database(vocabulary: Vocabulary, memory_corpus, progress: bool = False) -> ImageDatabase:
    db = ImageDatabase(vocabulary)
    for image in tqdm(memory_corpus, desc="Adding images to index", disable=not progress):
        db.add(image)
    return db
