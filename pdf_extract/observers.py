"""
Collaborators
=============
Interfaces the pipeline talks to on its way out:

    - ProgressObserver: receives progress, per-page failures and the
      terminal session outcome.
    - EditorDocumentStore: receives the final node sequence.

Concrete implementations here cover logging, plain callbacks and an
in-memory document used by the CLI, the HTTP service and the tests.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from .models import ExtractionProgress, PageError, SessionResult

logger = logging.getLogger(__name__)


class ProgressObserver:
    """Base observer; every hook is optional."""

    def on_progress(self, progress: ExtractionProgress) -> None:
        pass

    def on_page_failed(self, error: PageError) -> None:
        pass

    def on_session_complete(self, result: SessionResult) -> None:
        pass


class LoggingObserver(ProgressObserver):
    """Writes progress and failures to the package logger."""

    def on_progress(self, progress: ExtractionProgress) -> None:
        logger.info(f"Progress: {progress.completed}/{progress.total} page(s)")

    def on_page_failed(self, error: PageError) -> None:
        logger.warning(
            f"Page {error.page_index + 1} failed ({error.kind.value}): {error.reason}"
        )

    def on_session_complete(self, result: SessionResult) -> None:
        logger.info(
            f"Session {result.status.value}: {len(result.nodes)} node(s), "
            f"{len(result.page_errors)} failed page(s)"
        )


class CallbackObserver(ProgressObserver):
    """Adapts a plain progress_callback(current, total) to an observer."""

    def __init__(
        self,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        failure_callback: Optional[Callable[[PageError], None]] = None,
        complete_callback: Optional[Callable[[SessionResult], None]] = None,
    ):
        self._progress_callback = progress_callback
        self._failure_callback = failure_callback
        self._complete_callback = complete_callback

    def on_progress(self, progress: ExtractionProgress) -> None:
        if self._progress_callback:
            self._progress_callback(progress.completed, progress.total)

    def on_page_failed(self, error: PageError) -> None:
        if self._failure_callback:
            self._failure_callback(error)

    def on_session_complete(self, result: SessionResult) -> None:
        if self._complete_callback:
            self._complete_callback(result)


class CompositeObserver(ProgressObserver):
    """Fans every notification out to several observers."""

    def __init__(self, *observers: ProgressObserver):
        self.observers = [o for o in observers if o is not None]

    def on_progress(self, progress: ExtractionProgress) -> None:
        for o in self.observers:
            o.on_progress(progress)

    def on_page_failed(self, error: PageError) -> None:
        for o in self.observers:
            o.on_page_failed(error)

    def on_session_complete(self, result: SessionResult) -> None:
        for o in self.observers:
            o.on_session_complete(result)


# ─── Editor Document Store ────────────────────────────────────────────────────


class EditorDocumentStore(ABC):
    """Owns the editor's document tree."""

    @abstractmethod
    def insert(self, nodes: Sequence, position: Optional[int] = None) -> None:
        """Insert nodes at a block position (None = end of document)."""


class InMemoryDocumentStore(EditorDocumentStore):
    """A flat list of top-level block nodes."""

    def __init__(self, nodes: Optional[list] = None):
        self.nodes: list = list(nodes or [])
        self.insert_calls = 0
        self._lock = threading.Lock()

    def insert(self, nodes: Sequence, position: Optional[int] = None) -> None:
        with self._lock:
            if position is None or position > len(self.nodes):
                position = len(self.nodes)
            if position < 0:
                raise ValueError(f"Invalid insertion position: {position}")
            self.nodes[position:position] = list(nodes)
            self.insert_calls += 1
        logger.debug(f"Inserted {len(nodes)} node(s) at position {position}")
