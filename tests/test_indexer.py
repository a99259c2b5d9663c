import sqlite3
from contextlib import closing

import numpy as np
import pytest

from place_recall import indexer
from place_recall.features import Corpus, ImageDescriptors
from place_recall.indexer import ImageDatabase, IndexFormatError, IndexState, IndexStore
from place_recall.storage import FileStorage, MemoryStorage
from place_recall.vocabulary import Vocabulary, VocabularyParams


@pytest.fixture()
def voc(descriptor_corpus):
    return Vocabulary.create(descriptor_corpus.descriptors, VocabularyParams(k=4, levels=2))


@pytest.fixture()
def db(voc, descriptor_corpus):
    return indexer.build_database(voc, descriptor_corpus)


def test_fresh_build_assigns_positional_ids(db, descriptor_corpus):
    assert len(db) == len(descriptor_corpus)
    assert [e.entry_id for e in db.entries] == list(range(len(descriptor_corpus)))
    assert db.names == descriptor_corpus.names
    assert [e.path for e in db.entries] == descriptor_corpus.paths


def test_add_returns_next_id(voc, descriptor_corpus):
    db = ImageDatabase(voc)
    assert db.add(descriptor_corpus[3]) == 0
    assert db.add(descriptor_corpus[1]) == 1
    assert db.names == ["img_3.png", "img_1.png"]


def test_database_requires_vocabulary():
    with pytest.raises(ValueError):
        ImageDatabase(None)


def test_query_ranks_itself_first(db, descriptor_corpus):
    results = db.query(descriptor_corpus[2].descriptors, 3)
    assert results[0].entry_id == 2
    assert results[0].score == pytest.approx(1.0)
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.parametrize("top_n", [0, -1])
def test_query_non_positive_top_n_is_empty(db, descriptor_corpus, top_n):
    assert db.query(descriptor_corpus[0].descriptors, top_n) == []


def test_query_top_n_larger_than_database(db, descriptor_corpus):
    results = db.query(descriptor_corpus[0].descriptors, 50)
    assert sorted(r.entry_id for r in results) == list(range(len(descriptor_corpus)))


def test_query_empty_database(voc, descriptor_corpus):
    assert ImageDatabase(voc).query(descriptor_corpus[0].descriptors, 5) == []


def test_query_ties_break_on_lower_id(voc, descriptor_corpus):
    db = ImageDatabase(voc)
    for i in (0, 1, 0, 2, 1):
        db.add(descriptor_corpus[i])
    results = db.query(descriptor_corpus[1].descriptors, 5)
    assert [r.entry_id for r in results[:2]] == [1, 4]
    assert results[0].score == results[1].score
    for a, b in zip(results, results[1:]):
        assert a.score > b.score or (a.score == b.score and a.entry_id < b.entry_id)


def test_query_without_descriptors_has_no_results(db):
    assert db.query(np.zeros((0, 32), dtype=np.uint8), 10) == []
    assert db.query(None, 10) == []


def test_kl_entry_without_descriptors_never_outranks_a_match(descriptor_corpus):
    voc = Vocabulary.create(descriptor_corpus.descriptors, VocabularyParams(k=4, levels=2, scoring="kl"))
    db = ImageDatabase(voc)
    db.add(ImageDescriptors("/data/memory/blank.png", np.zeros((0, 32), dtype=np.uint8)))
    for img in descriptor_corpus:
        db.add(img)

    full = db.query(descriptor_corpus[2].descriptors, len(db))
    assert full[0].entry_id == 3
    assert full[0].score == pytest.approx(0.0)

    # one of img_2's three clusters
    partial = db.query(descriptor_corpus[2].descriptors[:20], len(db))
    assert partial[0].entry_id == 3
    blank = next(r for r in partial if r.entry_id == 0)
    assert blank.score < partial[0].score


def test_query_is_idempotent(db, descriptor_corpus):
    q = descriptor_corpus[4].descriptors
    assert db.query(q, 4) == db.query(q, 4)


def test_persist_round_trip_memory(db, descriptor_corpus):
    storage = MemoryStorage()
    db.save("db.sqlite", storage)
    again = ImageDatabase.load("db.sqlite", storage)
    assert again.names == db.names
    assert [e.bow for e in again.entries] == [e.bow for e in db.entries]
    for img in descriptor_corpus:
        for top_n in range(len(db) + 1):
            assert again.query(img.descriptors, top_n) == db.query(img.descriptors, top_n)


def test_persist_round_trip_file(db, descriptor_corpus, tmp_path):
    path = tmp_path / "models" / "db.sqlite"
    db.save(path)
    assert path.is_file()
    again = ImageDatabase.load(path)
    q = descriptor_corpus[1].descriptors
    assert again.query(q, 5) == db.query(q, 5)
    assert str(again) == str(db)


def test_load_missing_index():
    with pytest.raises(IndexFormatError):
        ImageDatabase.load("nope.sqlite", MemoryStorage())


def test_load_corrupt_index():
    storage = MemoryStorage()
    storage.write("db.sqlite", b"garbage" * 100)
    with pytest.raises(IndexFormatError):
        ImageDatabase.load("db.sqlite", storage)


def test_load_rejects_gap_in_entry_ids(db, tmp_path):
    path = tmp_path / "db.sqlite"
    db.save(path)
    conn = sqlite3.connect(str(path))
    with closing(conn):
        conn.execute("UPDATE entries SET entry_id = 99 WHERE entry_id = 1")
        conn.commit()
    with pytest.raises(IndexFormatError):
        ImageDatabase.load(path, FileStorage())


def test_store_builds_then_reuses(voc, descriptor_corpus):
    storage = MemoryStorage()
    store = IndexStore("db.sqlite", storage)
    assert store.resolve() is IndexState.NEEDS_BUILD
    db = store.build_or_load(voc, descriptor_corpus)
    assert store.state is IndexState.READY
    assert len(db) == len(descriptor_corpus)
    assert storage.writes == {"db.sqlite": 1}

    # at most one build per run
    assert store.build_or_load(voc, descriptor_corpus) is db
    assert storage.writes == {"db.sqlite": 1}

    second = IndexStore("db.sqlite", storage)
    assert second.resolve() is IndexState.LOADING
    loaded = second.build_or_load(None, Corpus([]))
    assert second.state is IndexState.READY
    assert loaded.names == db.names
    assert storage.writes == {"db.sqlite": 1}
    q = descriptor_corpus[0].descriptors
    assert loaded.query(q, 3) == db.query(q, 3)


def test_store_ignores_new_vocabulary_when_loading(voc, descriptor_corpus):
    storage = MemoryStorage()
    IndexStore("db.sqlite", storage).build_or_load(voc, descriptor_corpus)
    other = Vocabulary.create(descriptor_corpus.descriptors[:2], VocabularyParams(k=2, levels=1))
    loaded = IndexStore("db.sqlite", storage).build_or_load(other, Corpus(descriptor_corpus[:1]))
    assert len(loaded) == len(descriptor_corpus)
    assert loaded.vocabulary.n_words == voc.n_words


def test_store_force_rebuild(voc, descriptor_corpus):
    storage = MemoryStorage()
    IndexStore("db.sqlite", storage).build_or_load(voc, descriptor_corpus)
    store = IndexStore("db.sqlite", storage, force_rebuild=True)
    assert store.resolve() is IndexState.NEEDS_BUILD
    db = store.build_or_load(voc, Corpus(descriptor_corpus[:2]))
    assert len(db) == 2
    assert storage.writes == {"db.sqlite": 2}


def test_store_build_needs_vocabulary(descriptor_corpus):
    with pytest.raises(ValueError):
        IndexStore("db.sqlite", MemoryStorage()).build_or_load(None, descriptor_corpus)
