"""
Markup Extractor
================
Streams one page's structured markup from the inference endpoint.

Chunks are concatenated in arrival order. The whole call is bounded by a
wall-clock ceiling; there is no retry here (the orchestrator owns retry
policy). Cancellation is cooperative: the cancel event is checked between
chunks, and abort_all() closes every open stream.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Optional

from .endpoint import ChunkStream, InferenceEndpoint, InferenceRequest
from .errors import (
    EndpointError,
    ExtractionCancelled,
    ExtractionTimeout,
    ExtractorError,
)
from .models import PageImage

logger = logging.getLogger(__name__)

# A response wrapped whole in ```html … ``` (or ```markdown, ```)
CODE_FENCE_PATTERN = re.compile(
    r"^\s*```[A-Za-z0-9_-]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL
)


def strip_code_fence(markup: str) -> str:
    """Remove a code fence that wraps the entire response."""
    m = CODE_FENCE_PATTERN.match(markup)
    if m:
        return m.group(1).strip()
    return markup.strip()


class MarkupExtractor:
    """
    Page image → markup string, via a streaming endpoint call.

    Thread-safe: one instance is shared by all orchestrator workers.
    """

    def __init__(
        self,
        endpoint: InferenceEndpoint,
        timeout_s: float = 120.0,
        clock=time.monotonic,
    ):
        self.endpoint = endpoint
        self.timeout_s = timeout_s
        self._clock = clock
        self._open_streams: set[ChunkStream] = set()
        self._streams_lock = threading.Lock()

    def extract(
        self,
        image: PageImage,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Extract markup for one page.

        Raises:
            ExtractionTimeout: the call exceeded timeout_s.
            EndpointError / MalformedStream: transport or stream failure.
            ExtractionCancelled: cancel_event was set during the call.
        """
        page = image.index
        if cancel_event is not None and cancel_event.is_set():
            raise ExtractionCancelled("Cancelled before request", page_index=page)

        deadline = self._clock() + self.timeout_s
        request = InferenceRequest(
            image=image.data, format=image.format, instruction=prompt
        )

        try:
            stream = self.endpoint.open_stream(request, timeout_s=self.timeout_s)
        except ExtractorError as e:
            e.page_index = page
            raise
        except Exception as e:
            raise EndpointError(f"Request failed: {e}", page_index=page) from e

        self._register(stream)
        # abort_all() during open_stream could not see this stream yet
        if cancel_event is not None and cancel_event.is_set():
            self._unregister(stream)
            stream.close()
            raise ExtractionCancelled("Cancelled while opening", page_index=page)
        expired = threading.Event()

        def expire():
            expired.set()
            stream.close()

        # Hard wall-clock ceiling: closing the stream unblocks a stalled read
        watchdog = threading.Timer(self.timeout_s, expire)
        watchdog.daemon = True
        watchdog.start()

        chunks: list[str] = []
        try:
            for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    raise ExtractionCancelled(
                        "Cancelled while streaming", page_index=page
                    )
                if self._clock() >= deadline:
                    raise ExtractionTimeout(
                        f"Page exceeded {self.timeout_s:.0f}s", page_index=page
                    )
                chunks.append(chunk)
        except ExtractionCancelled:
            raise
        except Exception as e:
            if cancel_event is not None and cancel_event.is_set():
                raise ExtractionCancelled(
                    "Cancelled while streaming", page_index=page
                ) from e
            timed_out = expired.is_set() or self._clock() >= deadline
            if timed_out and not isinstance(e, ExtractionTimeout):
                raise ExtractionTimeout(
                    f"Page exceeded {self.timeout_s:.0f}s", page_index=page
                ) from e
            if isinstance(e, ExtractorError):
                e.page_index = page
                raise
            raise EndpointError(f"Stream failed: {e}", page_index=page) from e
        finally:
            watchdog.cancel()
            self._unregister(stream)
            stream.close()

        # A stream closed by abort_all() may end without raising
        if cancel_event is not None and cancel_event.is_set():
            raise ExtractionCancelled("Cancelled while streaming", page_index=page)
        if expired.is_set():
            raise ExtractionTimeout(
                f"Page exceeded {self.timeout_s:.0f}s", page_index=page
            )

        markup = strip_code_fence("".join(chunks))
        logger.debug(
            f"Page {page + 1}: {len(chunks)} chunk(s), {len(markup)} chars"
        )
        return markup

    def abort_all(self) -> int:
        """Close every in-flight stream. Returns how many were closed."""
        with self._streams_lock:
            streams = list(self._open_streams)
        for stream in streams:
            stream.close()
        if streams:
            logger.info(f"Aborted {len(streams)} in-flight stream(s)")
        return len(streams)

    @property
    def in_flight(self) -> int:
        with self._streams_lock:
            return len(self._open_streams)

    def _register(self, stream: ChunkStream):
        with self._streams_lock:
            self._open_streams.add(stream)

    def _unregister(self, stream: ChunkStream):
        with self._streams_lock:
            self._open_streams.discard(stream)
