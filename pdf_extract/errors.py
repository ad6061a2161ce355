"""
Error Taxonomy
==============
Exceptions raised by the extraction pipeline.

Page-level errors (ExtractorError and subclasses) are contained by the
orchestrator and recorded on the page's task. Session-level errors
(RasterizationError, ExtractionFailed) abort the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class PdfExtractError(Exception):
    """Base class for every error raised by pdf_extract."""


class RasterizationError(PdfExtractError):
    """The source document could not be opened or rendered."""


class AlreadyRunning(PdfExtractError):
    """A session was started while another run is still in progress."""


class ExtractorError(PdfExtractError):
    """A single page's extraction failed."""

    kind = "endpoint_error"

    def __init__(self, message: str, page_index: Optional[int] = None):
        super().__init__(message)
        self.page_index = page_index

    @property
    def reason(self) -> str:
        return str(self)


class ExtractionTimeout(ExtractorError):
    """The endpoint call exceeded the per-page wall-clock ceiling."""

    kind = "timeout"


class EndpointError(ExtractorError):
    """The inference endpoint rejected or failed the request."""

    kind = "endpoint_error"


class MalformedStream(ExtractorError):
    """The chunk stream ended early or carried something other than text."""

    kind = "malformed_stream"


class ExtractionCancelled(ExtractorError):
    """The page was aborted because the session was cancelled."""

    kind = "cancelled"


class ExtractionFailed(PdfExtractError):
    """
    Aggregate session failure.

    Carries every page-level error observed during the run so callers can
    show which pages failed and why.
    """

    def __init__(self, message: str, page_errors: Optional[list] = None):
        self.page_errors = list(page_errors or [])
        if self.page_errors:
            details = "; ".join(
                f"page {e.page_index + 1}: "
                f"{getattr(e.kind, 'value', e.kind)} ({e.reason})"
                for e in self.page_errors
            )
            message = f"{message} [{details}]"
        super().__init__(message)


class SessionCancelled(PdfExtractError):
    """The session was cancelled before its nodes were delivered."""


@dataclass(frozen=True)
class TranslationWarning:
    """
    Non-fatal translation issue. Recorded, never raised: the offending
    markup degrades to literal text.
    """
    message: str
    snippet: str = ""

    def __str__(self) -> str:
        if self.snippet:
            return f"{self.message}: {self.snippet!r}"
        return self.message
