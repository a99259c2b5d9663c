"""Reporting utilities: map entry ids back to file names and write the JSON report.

Report layout::

    {
      "<target file name>": [
        {"file_name": "<memory file name>", "score": 0.93},
        ...
      ],
      ...
    }

Targets appear in the order they were recorded; proposals keep the ranking of
the query. File names are base names, so two images in different directories
can share one. How that is handled is chosen with ``CollisionPolicy``:

- ``tolerate`` (default): proposals keep duplicate names as they are; a target
  name seen twice is written as ``name (2)``, ``name (3)``, ... with a warning.
- ``error``: any duplicate base name raises ``NameCollisionError``.
- ``parent``: ids include the parent directory (``dir/name``).
"""
from collections import Counter
from enum import Enum
from pathlib import Path
from typing import Dict, List, Sequence, Union
import json
import logging
import re

LOGGER = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\\/]")


class NameCollisionError(Exception):
    """Raised under ``CollisionPolicy.ERROR`` when two paths share a file name."""


class CollisionPolicy(str, Enum):
    TOLERATE = "tolerate"
    ERROR = "error"
    PARENT = "parent"


def to_external_id(path: Union[str, Path]) -> str:
    """Return the last component of ``path``, splitting on ``/`` and ``\\``."""
    return _SEPARATORS.split(str(path))[-1]


def _parent_id(path: Union[str, Path]) -> str:
    parts = [p for p in _SEPARATORS.split(str(path)) if p]
    return "/".join(parts[-2:]) if parts else ""


class ReportWriter:
    def __init__(self, memory_paths: Sequence[str], policy: CollisionPolicy = CollisionPolicy.TOLERATE):
        self.policy = CollisionPolicy(policy)
        self.memory_names: List[str] = [self.external_id(p) for p in memory_paths]
        self._records: Dict[str, List[Dict[str, object]]] = {}
        self._seen_targets: Counter = Counter()

        dupes = sorted(n for n, c in Counter(self.memory_names).items() if c > 1)
        if dupes:
            if self.policy == CollisionPolicy.ERROR:
                raise NameCollisionError(f"Memory images share file names: {', '.join(dupes)}")
            LOGGER.warning("Memory images share file names, proposals may be ambiguous: %s", ", ".join(dupes))

    def external_id(self, path: Union[str, Path]) -> str:
        if self.policy == CollisionPolicy.PARENT:
            return _parent_id(path)
        return to_external_id(path)

    def __len__(self) -> int:
        return len(self._records)

    def record(self, target: Union[str, Path], results) -> str:
        """Append ranked ``results`` for ``target``; returns the report key used."""
        key = self.external_id(target)
        self._seen_targets[key] += 1
        if self._seen_targets[key] > 1:
            if self.policy == CollisionPolicy.ERROR:
                raise NameCollisionError(f"Target file name reported twice: {key}")
            LOGGER.warning("Target file name %s already reported, writing it as a numbered key", key)
            base, n = key, self._seen_targets[key]
            key = f"{base} ({n})"
            while key in self._records:
                n += 1
                key = f"{base} ({n})"
        self._records[key] = [
            {"file_name": self.memory_names[r.entry_id], "score": float(r.score)}
            for r in results
        ]
        return key

    def as_dict(self) -> Dict[str, List[Dict[str, object]]]:
        return {k: [dict(p) for p in v] for k, v in self._records.items()}

    def flush(self, out_path: Union[str, Path]) -> Path:
        out_path = Path(out_path)
        if out_path.parent and not out_path.parent.exists():
            out_path.parent.mkdir(parents=True, exist_ok=True)
        with out_path.open("w", encoding="utf-8") as f:
            json.dump(self._records, f, indent=2, ensure_ascii=False)
            f.write("\n")
        return out_path


def load_report(path: Union[str, Path]) -> Dict[str, List[Dict[str, object]]]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
