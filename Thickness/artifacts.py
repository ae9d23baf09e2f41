"""File-existence memoization with atomic publication.

Every expensive step writes exactly one (or a known set of) uniquely named output
files.  A step is skipped when its output already exists, which is what lets a
multi-hour run resume after a crash.  Producers never write the final name
directly: they receive a temporary sibling path and the store renames it into
place only after the producer returned, so an interrupted producer can not leave
a half-written file that would later be mistaken for a finished artifact.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List, Sequence

from Thickness.errors import IncompleteArtifactError, MissingPrerequisiteError


PARTIAL_PREFIX = ".partial."


def partial_path(path: Path) -> Path:
    """Temporary sibling of ``path``; keeps the suffix so tools still infer the file format."""
    return path.with_name(f"{PARTIAL_PREFIX}{path.name}")


class ArtifactStore:
    def __init__(self) -> None:
        self.hits: List[Path] = []
        self.produced: List[Path] = []

    def ensure(self, path: Path, producer: Callable[[Path], None]) -> Path:
        """Return ``path``, running ``producer(tmp_path)`` first when it does not exist yet."""
        self.ensure_many([path], lambda tmps: producer(tmps[0]))
        return Path(path)

    def ensure_many(self, paths: Sequence[Path], producer: Callable[[List[Path]], None]) -> List[Path]:
        """Multi-output variant of :meth:`ensure` for tools writing several files per call.

        The step counts as done only when every output exists; otherwise all of them are
        produced again and published together.
        """
        targets = [Path(p) for p in paths]
        if targets and all(p.exists() for p in targets):
            self.hits.extend(targets)
            return targets

        tmps = [partial_path(p) for p in targets]
        for target, tmp in zip(targets, tmps):
            target.parent.mkdir(parents=True, exist_ok=True)
            if tmp.exists():
                tmp.unlink()
        try:
            producer(tmps)
            missing = [t for t, tmp in zip(targets, tmps) if not tmp.exists()]
            if missing:
                raise IncompleteArtifactError(missing)
            for target, tmp in zip(targets, tmps):
                os.replace(tmp, target)
        finally:
            for tmp in tmps:
                if tmp.exists():
                    tmp.unlink()
        self.produced.extend(targets)
        return targets

    def publish_text(self, path: Path, text: str) -> Path:
        """Write ``text`` to ``path`` atomically, replacing any previous version."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = partial_path(path)
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
        self.produced.append(path)
        return path

    def require(self, what: str, *paths: Path) -> None:
        missing = [Path(p) for p in paths if not Path(p).exists()]
        if missing:
            raise MissingPrerequisiteError(what, missing)
