from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .errors import BeadsError
from .graph import create_empty_graph, recover_interrupted, total_estimated_tokens
from .models import BeadGraph, utc_now_iso

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    The lock lives on a ``.lock`` sidecar next to *path* so the data file
    itself can be replaced with ``os.replace`` while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a same-directory temp file and ``os.replace``.

    A reader never observes a partially written graph file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_graph_text(path: Path) -> str:
    if not path.is_file():
        raise BeadsError(
            f"Bead graph not found: {path}",
            suggestions=["Run the planner to generate .beads/graph.json", "Pass --graph with the correct path"],
        )
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise BeadsError(f"Bead graph at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise BeadsError(f"Bead graph at {path} is empty")
    return text


class GraphStore:
    """Whole-file JSON persistence for a single bead graph.

    Every save rewrites the complete graph atomically under an exclusive
    ``fcntl`` lock. Loading resets beads left ``running`` by an interrupted
    process back to ``pending`` and persists the repair immediately, so a
    second load finds nothing to recover.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> BeadGraph:
        """Read and validate the graph, applying crash recovery.

        Raises:
            BeadsError: If the file is missing, empty, or fails validation.
        """
        with _locked_file(self.path):
            text = _read_graph_text(self.path)
            try:
                graph = BeadGraph.model_validate_json(text)
            except ValidationError as exc:
                raise BeadsError(f"Bead graph at {self.path} failed validation: {exc}") from exc

            reset = recover_interrupted(graph)
            if reset:
                logger.warning("Recovered %d interrupted bead(s) in %s: %s", len(reset), self.path, ", ".join(reset))
                self._write_unlocked(graph)
        return graph

    def save(self, graph: BeadGraph) -> None:
        with _locked_file(self.path):
            self._write_unlocked(graph)

    def initialize(self) -> BeadGraph:
        """Create an empty graph file if none exists and return the stored graph."""
        if self.exists():
            return self.load()
        graph = create_empty_graph()
        self.save(graph)
        logger.info("Initialized empty bead graph at %s", self.path)
        return graph

    def _write_unlocked(self, graph: BeadGraph) -> None:
        graph.metadata.updated_at = utc_now_iso()
        graph.metadata.total_estimated_tokens = total_estimated_tokens(graph.beads)
        _atomic_write_text(self.path, graph.model_dump_json(indent=2))
