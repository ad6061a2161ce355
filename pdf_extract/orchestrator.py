"""
Extraction Orchestrator
=======================
Runs one extraction task per page on a bounded worker pool and collects
the results in page order.

Algorithm:
    1. Every page starts as a PENDING task.
    2. K workers repeatedly claim the lowest-index PENDING task, mark it
       IN_FLIGHT and call the extractor (with retry/backoff on failure).
    3. Each terminal state (succeeded, failed, cancelled) increments the
       shared progress counter and notifies the observer.
    4. The run ends when no task is claimable: all are terminal, the run
       was cancelled, or the failure policy aborted it.

Task slots are written by exactly one worker each; the claim cursor and
the progress counter are guarded by a lock. Observer notifications are
serialized so observers always see a non-decreasing `completed`.
"""

from __future__ import annotations

import html
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import ExtractionConfig, FailurePolicy
from .errors import ExtractionCancelled, ExtractorError
from .extractor import MarkupExtractor
from .models import (
    ErrorKind,
    ExtractionProgress,
    ExtractionTask,
    PageError,
    PageImage,
    PageWarning,
    SessionStatus,
    TaskState,
)
from .observers import ProgressObserver

logger = logging.getLogger(__name__)

MAX_BACKOFF_S = 10.0


def native_text_to_markup(text: str) -> str:
    """Selectable page text → one escaped <p> per non-empty line."""
    lines = [line.strip() for line in text.splitlines()]
    return "".join(f"<p>{html.escape(line, quote=False)}</p>" for line in lines if line)


@dataclass
class OrchestrationResult:
    """Per-page outcome of a run, indexed by page."""
    status: SessionStatus
    tasks: list[ExtractionTask]
    progress: ExtractionProgress
    error: Optional[str] = None
    warnings: list[PageWarning] = field(default_factory=list)

    @property
    def markups(self) -> list[Optional[str]]:
        """Markup per page index; None for pages that did not succeed."""
        return [
            t.accumulated_markup if t.state == TaskState.SUCCEEDED else None
            for t in self.tasks
        ]

    @property
    def page_errors(self) -> list[PageError]:
        return [
            t.error for t in self.tasks
            if t.state == TaskState.FAILED and t.error is not None
        ]

    @property
    def succeeded_count(self) -> int:
        return sum(1 for t in self.tasks if t.state == TaskState.SUCCEEDED)


class ExtractionOrchestrator:
    """
    Bounded-parallel page extraction with ordered results.

    One orchestrator drives one run; create a new one per session.
    """

    def __init__(
        self,
        extractor: MarkupExtractor,
        config: Optional[ExtractionConfig] = None,
        observer: Optional[ProgressObserver] = None,
        sleep=None,
    ):
        self.extractor = extractor
        self.config = config or ExtractionConfig()
        self.observer = observer or ProgressObserver()

        self._halt = threading.Event()
        self._wait = sleep or self._halt.wait
        self._cancel_requested = False
        self._aborted_by: Optional[int] = None

        self._table_lock = threading.Lock()
        self._notify_lock = threading.RLock()
        self._tasks: list[ExtractionTask] = []
        self._images: list[PageImage] = []
        self._cursor = 0
        self._completed = 0

    # ─── Public API ───────────────────────────────────────────────────────

    def progress(self) -> ExtractionProgress:
        with self._table_lock:
            return ExtractionProgress(
                completed=self._completed, total=len(self._tasks)
            )

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self):
        """Stop claiming new pages and abort in-flight calls."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        self._halt.set()
        self.extractor.abort_all()
        logger.info("Cancellation requested")

    def run(self, images: Sequence[PageImage]) -> OrchestrationResult:
        """
        Extract every page and return results in page order.

        Args:
            images: One PageImage per page, index 0..N-1.
        """
        ordered = sorted(images, key=lambda img: img.index)
        if [img.index for img in ordered] != list(range(len(ordered))):
            raise ValueError("Page images must be indexed 0..N-1 without gaps")

        with self._table_lock:
            self._images = ordered
            self._tasks = [ExtractionTask(page_index=img.index) for img in ordered]
            self._cursor = 0
            self._completed = 0

        total = len(ordered)
        workers = min(self.config.concurrency, total)
        logger.info(
            f"Extracting {total} page(s) with {workers} worker(s), "
            f"policy={self.config.failure_policy.value}"
        )

        if workers > 0:
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="pdf-extract-worker"
            ) as pool:
                futures = [pool.submit(self._worker_loop) for _ in range(workers)]
                for future in futures:
                    future.result()

        return self._build_result()

    # ─── Worker Loop ──────────────────────────────────────────────────────

    def _worker_loop(self):
        while True:
            task = self._claim()
            if task is None:
                return
            self._process(task)

    def _claim(self) -> Optional[ExtractionTask]:
        """Next PENDING task by ascending index, or None when done/halted."""
        if self._halt.is_set():
            return None
        with self._table_lock:
            while self._cursor < len(self._tasks):
                task = self._tasks[self._cursor]
                self._cursor += 1
                if task.state == TaskState.PENDING:
                    task.state = TaskState.IN_FLIGHT
                    return task
        return None

    def _process(self, task: ExtractionTask):
        image = self._images[task.page_index]

        if self._use_native_text(image):
            task.source = "native_text"
            task.attempts = 1
            self._finish_success(task, native_text_to_markup(image.native_text))
            return

        attempt = 0
        while True:
            task.attempts += 1
            try:
                markup = self.extractor.extract(
                    image, self.config.instruction, cancel_event=self._halt
                )
            except ExtractionCancelled as e:
                self._finish_failure(task, e)
                return
            except ExtractorError as e:
                if self._halt.is_set():
                    self._finish_failure(
                        task, ExtractionCancelled(str(e), page_index=task.page_index)
                    )
                    return
                if attempt < self.config.max_retries:
                    backoff = min(
                        MAX_BACKOFF_S, self.config.retry_backoff_s * (2 ** attempt)
                    )
                    logger.warning(
                        f"Page {task.page_index + 1}: {e.kind} ({e}); "
                        f"retry {attempt + 1}/{self.config.max_retries} "
                        f"in {backoff:.1f}s"
                    )
                    attempt += 1
                    if self._wait(backoff) or self._halt.is_set():
                        self._finish_failure(
                            task,
                            ExtractionCancelled(
                                "Cancelled during backoff", page_index=task.page_index
                            ),
                        )
                        return
                    continue
                self._finish_failure(task, e)
                return
            self._finish_success(task, markup)
            return

    def _use_native_text(self, image: PageImage) -> bool:
        return (
            self.config.prefer_native_text
            and len(image.native_text.strip()) >= self.config.native_text_min_chars
        )

    # ─── Terminal Transitions ─────────────────────────────────────────────

    def _finish_success(self, task: ExtractionTask, markup: str):
        task.accumulated_markup = markup
        if not markup.strip():
            task.warnings.append(PageWarning(
                page_index=task.page_index, message="Empty model response"
            ))
            logger.warning(f"Page {task.page_index + 1}: empty model response")
        task.state = TaskState.SUCCEEDED
        self._record_terminal(None)

    def _finish_failure(self, task: ExtractionTask, error: ExtractorError):
        page_error = PageError(
            page_index=task.page_index,
            kind=ErrorKind(error.kind),
            reason=str(error),
        )
        task.error = page_error

        if isinstance(error, ExtractionCancelled):
            task.state = TaskState.CANCELLED
            logger.info(f"Page {task.page_index + 1}: cancelled in flight")
            self._record_terminal(None)
            return

        task.state = TaskState.FAILED
        logger.warning(
            f"Page {task.page_index + 1} failed after {task.attempts} attempt(s): "
            f"{error.kind} ({error})"
        )

        if self.config.failure_policy == FailurePolicy.ABORT and not self._halt.is_set():
            self._aborted_by = task.page_index
            self._halt.set()
            self.extractor.abort_all()
            logger.error(
                f"Aborting run: page {task.page_index + 1} failed under abort policy"
            )

        self._record_terminal(page_error)

    def _record_terminal(self, page_error: Optional[PageError]):
        with self._notify_lock:
            with self._table_lock:
                self._completed += 1
                snapshot = ExtractionProgress(
                    completed=self._completed, total=len(self._tasks)
                )
            if page_error is not None:
                self._notify("on_page_failed", page_error)
            self._notify("on_progress", snapshot)

    def _notify(self, hook: str, payload):
        try:
            getattr(self.observer, hook)(payload)
        except Exception:
            logger.error(f"Progress observer {hook} raised", exc_info=True)

    # ─── Result ───────────────────────────────────────────────────────────

    def _build_result(self) -> OrchestrationResult:
        with self._table_lock:
            tasks = [t.model_copy(deep=True) for t in self._tasks]
            progress = ExtractionProgress(completed=self._completed, total=len(tasks))

        warnings = [w for t in tasks for w in t.warnings]
        succeeded = sum(1 for t in tasks if t.state == TaskState.SUCCEEDED)
        failed = sum(1 for t in tasks if t.state == TaskState.FAILED)

        status = SessionStatus.COMPLETED
        error = None
        if self._cancel_requested:
            status = SessionStatus.CANCELLED
        elif self._aborted_by is not None:
            status = SessionStatus.FAILED
            error = f"Aborted after page {self._aborted_by + 1} failed"
        elif tasks and succeeded == 0:
            status = SessionStatus.FAILED
            error = f"All {len(tasks)} page(s) failed"

        logger.info(
            f"Run finished: {status.value} — {succeeded} succeeded, "
            f"{failed} failed, {progress.completed}/{progress.total} processed"
        )
        return OrchestrationResult(
            status=status,
            tasks=tasks,
            progress=progress,
            error=error,
            warnings=warnings,
        )
