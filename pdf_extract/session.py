"""
Extraction Session
==================
Drives one PDF through rasterization, per-page extraction and translation,
then hands the resulting nodes to the editor's document store.

Architecture:
    - start() validates the document synchronously, then spawns one
      background thread for the run
    - The run rasterizes every page, hands the images to an
      ExtractionOrchestrator, and translates successful pages in page order
    - Completed runs insert their nodes into the store exactly once
    - Cancelled runs insert nothing; failed runs carry an aggregate error

States:
    IDLE → RUNNING → COMPLETED | CANCELLED | FAILED
    Any terminal state may start() again.

Usage:
    session = ExtractionSession(config, endpoint=endpoint, store=store)
    session.start(SourceDocument.from_path("scan.pdf"))
    result = session.wait()

    # Or, with the façade
    handle = run_extraction(doc, config, store=store)
    handle.add_done_callback(lambda r: print(r.status))
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Optional

from .config import ExtractionConfig
from .endpoint import InferenceEndpoint, OpenAIVisionEndpoint
from .errors import AlreadyRunning, RasterizationError
from .extractor import MarkupExtractor
from .models import (
    ExtractionProgress,
    Heading,
    HorizontalRule,
    PageWarning,
    SessionResult,
    SessionStatus,
    TaskState,
    Text,
)
from .observers import EditorDocumentStore, InMemoryDocumentStore, ProgressObserver
from .orchestrator import ExtractionOrchestrator, OrchestrationResult
from .rasterizer import PageRasterizer, SourceDocument
from .translator import MarkupTranslator

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class ExtractionSession:
    """
    Controller for extraction runs on one editor document.

    Thread-safe: start(), cancel(), progress() and wait() may be called
    from any thread.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        endpoint: Optional[InferenceEndpoint] = None,
        extractor: Optional[MarkupExtractor] = None,
        rasterizer: Optional[PageRasterizer] = None,
        store: Optional[EditorDocumentStore] = None,
        observer: Optional[ProgressObserver] = None,
        translator: Optional[MarkupTranslator] = None,
    ):
        self.config = config or ExtractionConfig()
        if extractor is None:
            endpoint = endpoint or OpenAIVisionEndpoint.from_config(self.config)
            extractor = MarkupExtractor(endpoint, timeout_s=self.config.page_timeout_s)
        self.extractor = extractor
        self.rasterizer = rasterizer or PageRasterizer(
            dpi=self.config.dpi,
            image_format=self.config.image_format,
            page_range=self.config.page_range,
        )
        self.store = store if store is not None else InMemoryDocumentStore()
        self.observer = observer or ProgressObserver()
        self.translator = translator or MarkupTranslator()
        self.session_id = next(_session_ids)

        self._lock = threading.Lock()
        self._status = SessionStatus.IDLE
        self._orchestrator: Optional[ExtractionOrchestrator] = None
        self._cancel_requested = False
        self._total = 0
        self._delivered = False
        self._result: Optional[SessionResult] = None
        self._done = threading.Event()
        self._done.set()
        self._callbacks: list[Callable[[SessionResult], None]] = []
        self._thread: Optional[threading.Thread] = None

    # ─── Public API ───────────────────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return self._status

    @property
    def result(self) -> Optional[SessionResult]:
        """Outcome of the last finished run (None while running or idle)."""
        with self._lock:
            return self._result

    def progress(self) -> ExtractionProgress:
        with self._lock:
            orchestrator = self._orchestrator
            total = self._total
            result = self._result
        if orchestrator is not None:
            snapshot = orchestrator.progress()
            # Zero until the orchestrator has built its task table
            if snapshot.total:
                return snapshot
        if result is not None:
            return result.progress
        return ExtractionProgress(completed=0, total=total)

    def start(self, doc: SourceDocument, position: Optional[int] = None) -> threading.Thread:
        """
        Begin extracting doc in the background.

        Args:
            doc: The PDF to extract.
            position: Block index in the store to insert at (None = end).

        Returns:
            The background thread running the session.

        Raises:
            AlreadyRunning: a run is in progress.
            RasterizationError: the document is unreadable or has no pages.
        """
        with self._lock:
            if self._status == SessionStatus.RUNNING:
                raise AlreadyRunning(f"Session {self.session_id} is already running")

            total = self.rasterizer.page_count(doc)
            if total == 0:
                raise RasterizationError(f"{doc.name} has no pages to extract")

            self._status = SessionStatus.RUNNING
            self._orchestrator = None
            self._cancel_requested = False
            self._total = total
            self._delivered = False
            self._result = None
            self._done = threading.Event()

            thread = threading.Thread(
                target=self._run,
                args=(doc, position),
                daemon=True,
                name=f"extract-session-{self.session_id}",
            )
            self._thread = thread

        thread.start()
        logger.info(
            f"Session {self.session_id}: started on {doc.name} ({total} page(s))"
        )
        return thread

    def cancel(self):
        """Request cancellation. No-op unless a run is in progress."""
        with self._lock:
            if (
                self._status != SessionStatus.RUNNING
                or self._cancel_requested
                or self._delivered
            ):
                return
            self._cancel_requested = True
            orchestrator = self._orchestrator
        logger.info(f"Session {self.session_id}: cancel requested")
        if orchestrator is not None:
            orchestrator.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        """Block until the current run ends. Returns None on timeout."""
        with self._lock:
            done = self._done
        if not done.wait(timeout):
            return None
        return self.result

    def add_done_callback(self, fn: Callable[[SessionResult], None]):
        """Call fn(result) when the run ends (immediately if it already has)."""
        with self._lock:
            if self._status != SessionStatus.RUNNING and self._result is not None:
                result = self._result
            else:
                self._callbacks.append(fn)
                return
        self._invoke(fn, result)

    # ─── Background Run ───────────────────────────────────────────────────

    def _run(self, doc: SourceDocument, position: Optional[int]):
        try:
            result = self._execute(doc, position)
        except Exception as e:
            logger.error(
                f"Session {self.session_id}: extraction FAILED — {e}", exc_info=True
            )
            result = SessionResult(
                status=SessionStatus.FAILED,
                progress=self.progress(),
                error=str(e),
            )
        self._finish(result)

    def _execute(self, doc: SourceDocument, position: Optional[int]) -> SessionResult:
        images = self.rasterizer.rasterize(doc)

        orchestrator = ExtractionOrchestrator(self.extractor, self.config, self.observer)
        with self._lock:
            self._orchestrator = orchestrator
            self._total = len(images)
            cancelled = self._cancel_requested
        if cancelled:
            orchestrator.cancel()

        outcome = orchestrator.run(images)
        if outcome.status != SessionStatus.COMPLETED:
            return self._result_from(outcome, outcome.status)

        nodes, warnings = self._assemble(outcome)

        with self._lock:
            if self._cancel_requested:
                return self._result_from(outcome, SessionStatus.CANCELLED)
            try:
                self.store.insert(nodes, position)
            except Exception as e:
                logger.error(f"Session {self.session_id}: document store rejected nodes: {e}")
                return self._result_from(
                    outcome, SessionStatus.FAILED,
                    error=f"Document store rejected nodes: {e}",
                )
            # Inserted: a late cancel() must not report this run as cancelled
            self._delivered = True

        return self._result_from(
            outcome, SessionStatus.COMPLETED, nodes=nodes, warnings=warnings
        )

    def _assemble(self, outcome: OrchestrationResult) -> tuple[list, list[PageWarning]]:
        """Translate successful pages in page order."""
        nodes: list = []
        warnings: list[PageWarning] = list(outcome.warnings)
        first = True

        for task in outcome.tasks:
            if task.state == TaskState.FAILED and task.error is not None:
                warnings.append(PageWarning(
                    page_index=task.page_index,
                    message=f"Page skipped: {task.error.kind.value} ({task.error.reason})",
                ))
                continue
            if task.state != TaskState.SUCCEEDED:
                continue

            translated = self.translator.parse(task.accumulated_markup)
            warnings.extend(
                PageWarning(page_index=task.page_index, message=str(w))
                for w in translated.warnings
            )

            if not translated.nodes:
                continue
            if self.config.page_headers:
                if not first:
                    nodes.append(HorizontalRule())
                nodes.append(Heading(
                    level=3, children=[Text(text=f"Page {task.page_index + 1}")]
                ))
            nodes.extend(translated.nodes)
            first = False

        warnings.sort(key=lambda w: w.page_index)
        return nodes, warnings

    def _result_from(
        self,
        outcome: OrchestrationResult,
        status: SessionStatus,
        nodes: Optional[list] = None,
        warnings: Optional[list[PageWarning]] = None,
        error: Optional[str] = None,
    ) -> SessionResult:
        return SessionResult(
            status=status,
            nodes=nodes or [],
            progress=outcome.progress,
            page_errors=outcome.page_errors,
            warnings=warnings if warnings is not None else outcome.warnings,
            error=error or outcome.error,
            tasks=outcome.tasks,
        )

    def _finish(self, result: SessionResult):
        with self._lock:
            self._status = result.status
            self._result = result
            self._orchestrator = None
            callbacks, self._callbacks = self._callbacks, []
            done = self._done

        if result.status == SessionStatus.FAILED:
            logger.error(
                f"Session {self.session_id}: FAILED — {result.error} "
                f"(failed pages: {[i + 1 for i in result.failed_pages]})"
            )
        else:
            logger.info(
                f"Session {self.session_id}: {result.status.value.upper()} — "
                f"{len(result.nodes)} node(s), "
                f"{result.progress.completed}/{result.progress.total} page(s)"
            )

        try:
            self.observer.on_session_complete(result)
        except Exception:
            logger.error("Progress observer on_session_complete raised", exc_info=True)

        done.set()
        for fn in callbacks:
            self._invoke(fn, result)

    @staticmethod
    def _invoke(fn: Callable[[SessionResult], None], result: SessionResult):
        try:
            fn(result)
        except Exception:
            logger.error("Session done callback raised", exc_info=True)


# ─── Façade ──────────────────────────────────────────────────────────────────


class SessionHandle:
    """Caller's view of a running extraction."""

    def __init__(self, session: ExtractionSession):
        self._session = session

    @property
    def session(self) -> ExtractionSession:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    def progress(self) -> ExtractionProgress:
        return self._session.progress()

    def cancel(self):
        self._session.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        return self._session.wait(timeout)

    def add_done_callback(self, fn: Callable[[SessionResult], None]):
        self._session.add_done_callback(fn)


def run_extraction(
    doc: SourceDocument,
    config: Optional[ExtractionConfig] = None,
    *,
    endpoint: Optional[InferenceEndpoint] = None,
    extractor: Optional[MarkupExtractor] = None,
    rasterizer: Optional[PageRasterizer] = None,
    store: Optional[EditorDocumentStore] = None,
    observer: Optional[ProgressObserver] = None,
    position: Optional[int] = None,
) -> SessionHandle:
    """
    Start extracting doc and return a handle to the run.

    Raises:
        RasterizationError: the document is unreadable or has no pages.
    """
    session = ExtractionSession(
        config,
        endpoint=endpoint,
        extractor=extractor,
        rasterizer=rasterizer,
        store=store,
        observer=observer,
    )
    session.start(doc, position=position)
    return SessionHandle(session)
