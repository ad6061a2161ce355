"""
Shared fakes for the test suite.

Fake page images carry their own index in the image bytes ("page-<i>") so
the fake endpoint can script a response per page. Real PyMuPDF renders are
numbered in the order the endpoint first sees them.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

import pytest

from pdf_extract.endpoint import ChunkStream, InferenceEndpoint, InferenceRequest
from pdf_extract.errors import RasterizationError
from pdf_extract.models import PageImage
from pdf_extract.observers import ProgressObserver
from pdf_extract.rasterizer import SourceDocument


@dataclass
class PageScript:
    """How the fake endpoint answers one request."""
    chunks: list = field(default_factory=list)
    delay: float = 0.0
    open_error: Optional[Exception] = None
    stream_error: Optional[Exception] = None
    hang: bool = False


class FakeStream(ChunkStream):
    def __init__(self, script: PageScript):
        self.script = script
        self.closed = threading.Event()

    def __iter__(self):
        for chunk in self.script.chunks:
            if self.script.delay:
                self.closed.wait(self.script.delay)
            if self.closed.is_set():
                return
            yield chunk
        if self.script.hang:
            self.closed.wait(5)
            return
        if self.script.stream_error is not None:
            raise self.script.stream_error

    def close(self):
        self.closed.set()


class FakeEndpoint(InferenceEndpoint):
    """
    Scripted endpoint.

    scripts maps page index → PageScript, or a list of PageScripts consumed
    one per attempt (the last one repeats). Unscripted pages answer
    "<p>Page N</p>".
    """

    def __init__(self, scripts: Optional[dict] = None):
        self.scripts = scripts or {}
        self.calls: list[int] = []
        self.requests: list[InferenceRequest] = []
        self.streams: list[FakeStream] = []
        self._rendered: dict[bytes, int] = {}
        self._lock = threading.Lock()

    def _page_of(self, image: bytes) -> int:
        if image.startswith(b"page-"):
            return int(image.decode().split("-")[1])
        # Real renders: number distinct images in the order first seen
        return self._rendered.setdefault(image, len(self._rendered))

    def open_stream(self, request: InferenceRequest, timeout_s: float) -> ChunkStream:
        with self._lock:
            page = self._page_of(request.image)
            attempt = self.calls.count(page)
            self.calls.append(page)
            self.requests.append(request)

        script = self.scripts.get(page)
        if isinstance(script, list):
            script = script[min(attempt, len(script) - 1)]
        if script is None:
            script = PageScript(chunks=[f"<p>Page {page + 1}</p>"])
        if script.open_error is not None:
            raise script.open_error

        stream = FakeStream(script)
        with self._lock:
            self.streams.append(stream)
        return stream


class FakeRasterizer:
    """Produces tiny placeholder images without touching PyMuPDF."""

    def __init__(
        self,
        pages: int,
        native_text: Optional[dict] = None,
        error: Optional[Exception] = None,
    ):
        self.pages = pages
        self.native_text = native_text or {}
        self.error = error
        self.rasterize_calls = 0

    def page_count(self, doc: SourceDocument) -> int:
        return self.pages

    def rasterize(self, doc: SourceDocument) -> list[PageImage]:
        self.rasterize_calls += 1
        if self.error is not None:
            raise self.error
        if self.pages == 0:
            raise RasterizationError(f"{doc.name} has no pages to extract")
        return [
            PageImage(
                index=i,
                data=f"page-{i}".encode(),
                native_text=self.native_text.get(i, ""),
            )
            for i in range(self.pages)
        ]


class RecordingObserver(ProgressObserver):
    """Keeps every notification for later assertions."""

    def __init__(self, on_progress_hook=None):
        self.progress = []
        self.failures = []
        self.results = []
        self._hook = on_progress_hook
        self._lock = threading.Lock()

    def on_progress(self, progress):
        with self._lock:
            self.progress.append(progress)
        if self._hook:
            self._hook(progress)

    def on_page_failed(self, error):
        with self._lock:
            self.failures.append(error)

    def on_session_complete(self, result):
        with self._lock:
            self.results.append(result)


def make_images(count: int, native_text: Optional[dict] = None) -> list[PageImage]:
    native_text = native_text or {}
    return [
        PageImage(index=i, data=f"page-{i}".encode(), native_text=native_text.get(i, ""))
        for i in range(count)
    ]


@pytest.fixture
def fake_doc():
    return SourceDocument(b"%PDF-1.4 fake", name="fake.pdf")


@pytest.fixture
def page_script():
    return PageScript


@pytest.fixture
def fake_endpoint_factory():
    return FakeEndpoint


@pytest.fixture
def fake_rasterizer_factory():
    return FakeRasterizer


@pytest.fixture
def recording_observer():
    return RecordingObserver()


@pytest.fixture
def recording_observer_factory():
    return RecordingObserver


@pytest.fixture
def images_factory():
    return make_images
