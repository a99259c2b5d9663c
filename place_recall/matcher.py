"""Query engine: rank memory images for each target image."""
from typing import Iterable, Iterator, List, Tuple
import logging

from place_recall.features import ImageDescriptors
from place_recall.indexer import ImageDatabase, QueryResult

LOGGER = logging.getLogger(__name__)


def query_targets(
    database: ImageDatabase,
    targets: Iterable[ImageDescriptors],
    top_n: int,
) -> Iterator[Tuple[ImageDescriptors, List[QueryResult]]]:
    """Yield ``(target, results)`` in target order, skipping targets without results."""
    for target in targets:
        results = database.query(target.descriptors, top_n)
        if not results:
            LOGGER.info("No results for target %s", target.path)
            continue
        LOGGER.debug(
            "Searching for Target %s. %s",
            target.path,
            ", ".join(f"<EntryId: {r.entry_id}, Score: {r.score:.6f}>" for r in results),
        )
        yield target, results
