"""End-to-end retrieval run: features -> vocabulary -> index -> queries -> report."""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union
import logging

from place_recall import features, indexer, matcher, report, vocabulary
from place_recall.storage import FileStorage

LOGGER = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    voc_path: str = "small_voc.npz"
    index_path: str = "small_db.sqlite"
    report_path: Optional[str] = "report.json"
    vocab_params: vocabulary.VocabularyParams = field(default_factory=vocabulary.VocabularyParams)
    orb_max_features: int = features.ORB_MAX_FEATURES
    sort_files: bool = False
    collision_policy: report.CollisionPolicy = report.CollisionPolicy.TOLERATE
    force_rebuild: bool = False
    progress: bool = True


def run(
    memory_dir: Union[str, Path],
    target_dir: Union[str, Path],
    top_n: int,
    config: Optional[PipelineConfig] = None,
    storage=None,
) -> report.ReportWriter:
    """Retrieve the ``top_n`` closest memory images for every target image.

    When a persisted index exists it is reused as is (it carries its own
    vocabulary) and the memory directory is not read. Otherwise the memory
    images are extracted, the vocabulary is trained or loaded from
    ``config.voc_path`` and a fresh index is built and saved.

    Raises ``VocabularyError`` when a vocabulary has to be trained but the
    memory images yield no descriptors at all (empty directory, or nothing
    decodable); nothing is persisted in that case.
    """
    config = config or PipelineConfig()
    storage = storage or FileStorage()

    store = indexer.IndexStore(config.index_path, storage, force_rebuild=config.force_rebuild)
    if store.resolve() == indexer.IndexState.LOADING:
        db = store.build_or_load()
    else:
        memory = features.load_corpus(
            memory_dir,
            max_features=config.orb_max_features,
            sort=config.sort_files,
            progress=config.progress,
        )
        voc = vocabulary.train_or_load(config.voc_path, memory, config.vocab_params, storage)
        db = store.build_or_load(voc, memory, progress=config.progress)

    targets = features.load_corpus(
        target_dir,
        max_features=config.orb_max_features,
        sort=config.sort_files,
        progress=config.progress,
    )

    writer = report.ReportWriter([e.path for e in db.entries], policy=config.collision_policy)
    for target, results in matcher.query_targets(db, targets, top_n):
        writer.record(target.path, results)
    LOGGER.info("%d of %d targets have proposals", len(writer), len(targets))

    if config.report_path:
        out = writer.flush(config.report_path)
        LOGGER.info("Report written to %s", out)
    return writer
