"""
Tests for the extraction orchestrator: ordering, progress, failure
policies, retries and cancellation.
"""

from __future__ import annotations

import threading

import pytest

from pdf_extract.config import ExtractionConfig, FailurePolicy
from pdf_extract.errors import EndpointError, ExtractionTimeout, MalformedStream
from pdf_extract.extractor import MarkupExtractor
from pdf_extract.models import ErrorKind, SessionStatus, TaskState
from pdf_extract.orchestrator import ExtractionOrchestrator, native_text_to_markup


def _orchestrator(endpoint, observer=None, sleep=None, **config):
    cfg = ExtractionConfig(**config)
    extractor = MarkupExtractor(endpoint, timeout_s=cfg.page_timeout_s)
    return ExtractionOrchestrator(extractor, cfg, observer, sleep=sleep)


# ═══════════════════════════════════════════════════════════════════════════════
# ORDERING & PROGRESS TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestOrdering:
    """Test that results follow page order regardless of completion order."""

    def test_all_pages_succeed(self, fake_endpoint_factory, images_factory):
        endpoint = fake_endpoint_factory()
        result = _orchestrator(endpoint, concurrency=3).run(images_factory(4))

        assert result.status == SessionStatus.COMPLETED
        assert result.markups == [f"<p>Page {i}</p>" for i in range(1, 5)]
        assert result.progress.completed == 4
        assert result.progress.total == 4
        assert all(t.state == TaskState.SUCCEEDED for t in result.tasks)

    def test_reverse_completion_keeps_order(
        self, fake_endpoint_factory, page_script, images_factory, recording_observer
    ):
        # Earlier pages stream slower, so page 4 finishes first
        scripts = {
            i: page_script(chunks=[f"<p>{i}</p>"], delay=0.05 * (4 - i))
            for i in range(4)
        }
        endpoint = fake_endpoint_factory(scripts)
        result = _orchestrator(
            endpoint, recording_observer, concurrency=4
        ).run(images_factory(4))

        assert result.markups == ["<p>0</p>", "<p>1</p>", "<p>2</p>", "<p>3</p>"]
        assert sorted(endpoint.calls) == [0, 1, 2, 3]

    def test_pages_claimed_in_ascending_order(self, fake_endpoint_factory, images_factory):
        endpoint = fake_endpoint_factory()
        _orchestrator(endpoint, concurrency=1).run(images_factory(5))
        assert endpoint.calls == [0, 1, 2, 3, 4]

    def test_progress_is_monotonic(
        self, fake_endpoint_factory, images_factory, recording_observer
    ):
        endpoint = fake_endpoint_factory()
        _orchestrator(endpoint, recording_observer, concurrency=3).run(images_factory(6))

        completed = [p.completed for p in recording_observer.progress]
        assert completed == [1, 2, 3, 4, 5, 6]
        assert all(p.total == 6 for p in recording_observer.progress)

    def test_never_exceeds_concurrency(
        self, fake_endpoint_factory, page_script, images_factory
    ):
        class CountingExtractor(MarkupExtractor):
            def __init__(self, endpoint):
                super().__init__(endpoint)
                self.active = 0
                self.peak = 0
                self._count_lock = threading.Lock()

            def extract(self, image, prompt, cancel_event=None):
                with self._count_lock:
                    self.active += 1
                    self.peak = max(self.peak, self.active)
                try:
                    return super().extract(image, prompt, cancel_event)
                finally:
                    with self._count_lock:
                        self.active -= 1

        scripts = {i: page_script(chunks=["<p>x</p>"], delay=0.02) for i in range(8)}
        extractor = CountingExtractor(fake_endpoint_factory(scripts))
        result = ExtractionOrchestrator(
            extractor, ExtractionConfig(concurrency=2)
        ).run(images_factory(8))

        assert result.succeeded_count == 8
        assert extractor.peak <= 2

    def test_rejects_gapped_indices(self, fake_endpoint_factory, images_factory):
        images = images_factory(3)
        with pytest.raises(ValueError):
            _orchestrator(fake_endpoint_factory()).run([images[0], images[2]])

    def test_empty_run(self, fake_endpoint_factory):
        result = _orchestrator(fake_endpoint_factory()).run([])
        assert result.status == SessionStatus.COMPLETED
        assert result.tasks == []


# ═══════════════════════════════════════════════════════════════════════════════
# FAILURE POLICY TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestFailurePolicy:
    """Test tolerate / abort behavior on page failures."""

    def test_timeouts_tolerated(
        self, fake_endpoint_factory, page_script, images_factory, recording_observer
    ):
        endpoint = fake_endpoint_factory({
            2: page_script(open_error=ExtractionTimeout("simulated")),
            3: page_script(open_error=ExtractionTimeout("simulated")),
        })
        result = _orchestrator(
            endpoint, recording_observer, concurrency=2
        ).run(images_factory(5))

        assert result.status == SessionStatus.COMPLETED
        assert result.progress.completed == 5
        assert result.markups == ["<p>Page 1</p>", "<p>Page 2</p>", None, None, "<p>Page 5</p>"]
        assert [e.page_index for e in result.page_errors] == [2, 3]
        assert all(e.kind == ErrorKind.TIMEOUT for e in result.page_errors)
        assert sorted(e.page_index for e in recording_observer.failures) == [2, 3]
        assert len(recording_observer.progress) == 5

    def test_all_pages_failed(self, fake_endpoint_factory, page_script, images_factory):
        endpoint = fake_endpoint_factory({
            i: page_script(open_error=EndpointError("HTTP 500")) for i in range(3)
        })
        result = _orchestrator(endpoint).run(images_factory(3))
        assert result.status == SessionStatus.FAILED
        assert "All 3 page(s) failed" in result.error
        assert len(result.page_errors) == 3

    def test_single_page_failure(self, fake_endpoint_factory, page_script, images_factory):
        endpoint = fake_endpoint_factory({
            0: page_script(open_error=MalformedStream("truncated"))
        })
        result = _orchestrator(endpoint).run(images_factory(1))
        assert result.status == SessionStatus.FAILED
        assert len(result.page_errors) == 1
        assert result.page_errors[0].kind == ErrorKind.MALFORMED_STREAM

    def test_abort_policy_stops_claims(
        self, fake_endpoint_factory, page_script, images_factory
    ):
        endpoint = fake_endpoint_factory({
            1: page_script(open_error=EndpointError("HTTP 400"))
        })
        result = _orchestrator(
            endpoint, concurrency=1, failure_policy=FailurePolicy.ABORT
        ).run(images_factory(5))

        assert result.status == SessionStatus.FAILED
        assert "page 2" in result.error
        assert endpoint.calls == [0, 1]
        assert result.tasks[2].state == TaskState.PENDING
        assert result.progress.completed == 2

    def test_abort_policy_cancels_siblings(
        self, fake_endpoint_factory, page_script, images_factory
    ):
        endpoint = fake_endpoint_factory({
            0: page_script(chunks=["<p>slow</p>"], hang=True),
            1: page_script(open_error=EndpointError("HTTP 400")),
        })
        result = _orchestrator(
            endpoint, concurrency=2, failure_policy="abort"
        ).run(images_factory(2))

        assert result.status == SessionStatus.FAILED
        assert result.tasks[0].state == TaskState.CANCELLED
        assert result.tasks[1].state == TaskState.FAILED
        # Cancelled siblings are not reported as page errors
        assert [e.page_index for e in result.page_errors] == [1]


# ═══════════════════════════════════════════════════════════════════════════════
# RETRY TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRetries:
    """Test retry with backoff."""

    def test_retry_then_succeed(self, fake_endpoint_factory, page_script, images_factory):
        waits = []
        endpoint = fake_endpoint_factory({0: [
            page_script(open_error=EndpointError("HTTP 503")),
            page_script(open_error=EndpointError("HTTP 503")),
            page_script(chunks=["<p>ok</p>"]),
        ]})
        result = _orchestrator(
            endpoint,
            sleep=lambda s: waits.append(s) or False,
            max_retries=2,
            retry_backoff_s=1.0,
        ).run(images_factory(1))

        assert result.status == SessionStatus.COMPLETED
        assert result.markups == ["<p>ok</p>"]
        assert result.tasks[0].attempts == 3
        assert waits == [1.0, 2.0]

    def test_retries_exhausted(self, fake_endpoint_factory, page_script, images_factory):
        endpoint = fake_endpoint_factory({
            0: page_script(open_error=ExtractionTimeout("slow")),
        })
        result = _orchestrator(
            endpoint, sleep=lambda s: False, max_retries=2,
        ).run(images_factory(2))

        assert endpoint.calls.count(0) == 3
        assert result.tasks[0].state == TaskState.FAILED
        assert result.status == SessionStatus.COMPLETED

    def test_backoff_is_capped(self, fake_endpoint_factory, page_script, images_factory):
        waits = []
        endpoint = fake_endpoint_factory({
            0: page_script(open_error=EndpointError("HTTP 503")),
        })
        _orchestrator(
            endpoint,
            sleep=lambda s: waits.append(s) or False,
            max_retries=4,
            retry_backoff_s=4.0,
        ).run(images_factory(1))
        assert waits == [4.0, 8.0, 10.0, 10.0]

    def test_no_retry_by_default(self, fake_endpoint_factory, page_script, images_factory):
        endpoint = fake_endpoint_factory({
            0: page_script(open_error=EndpointError("HTTP 503")),
        })
        _orchestrator(endpoint).run(images_factory(1))
        assert endpoint.calls == [0]


# ═══════════════════════════════════════════════════════════════════════════════
# CANCELLATION & NATIVE TEXT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCancellation:

    def test_cancel_mid_run(
        self, fake_endpoint_factory, images_factory, recording_observer_factory
    ):
        endpoint = fake_endpoint_factory()
        holder = {}

        def hook(progress):
            if progress.completed == 2:
                holder["orchestrator"].cancel()

        observer = recording_observer_factory(on_progress_hook=hook)
        orchestrator = _orchestrator(endpoint, observer, concurrency=1)
        holder["orchestrator"] = orchestrator

        result = orchestrator.run(images_factory(5))

        assert result.status == SessionStatus.CANCELLED
        assert endpoint.calls == [0, 1]
        assert orchestrator.cancel_requested

    def test_cancel_aborts_in_flight(
        self, fake_endpoint_factory, page_script, images_factory
    ):
        endpoint = fake_endpoint_factory({
            i: page_script(chunks=["<p>"], hang=True) for i in range(3)
        })
        orchestrator = _orchestrator(endpoint, concurrency=3)
        timer = threading.Timer(0.2, orchestrator.cancel)
        timer.start()

        result = orchestrator.run(images_factory(3))
        timer.join()

        assert result.status == SessionStatus.CANCELLED
        assert all(t.state == TaskState.CANCELLED for t in result.tasks)
        assert result.page_errors == []
        assert result.progress.completed == 3


class TestNativeText:

    def test_native_text_skips_model(self, fake_endpoint_factory, images_factory):
        endpoint = fake_endpoint_factory()
        text = "This page has plenty of selectable text & symbols on it."
        result = _orchestrator(
            endpoint, prefer_native_text=True
        ).run(images_factory(2, native_text={0: text}))

        assert endpoint.calls == [1]
        assert result.tasks[0].source == "native_text"
        assert result.markups[0] == (
            "<p>This page has plenty of selectable text &amp; symbols on it.</p>"
        )

    def test_short_native_text_uses_model(self, fake_endpoint_factory, images_factory):
        endpoint = fake_endpoint_factory()
        _orchestrator(endpoint, prefer_native_text=True).run(
            images_factory(1, native_text={0: "12"})
        )
        assert endpoint.calls == [0]

    def test_native_text_markup(self):
        assert native_text_to_markup("a < b\n\n  c  ") == "<p>a &lt; b</p><p>c</p>"

    def test_empty_response_warns(self, fake_endpoint_factory, page_script, images_factory):
        endpoint = fake_endpoint_factory({0: page_script(chunks=[])})
        result = _orchestrator(endpoint).run(images_factory(1))
        assert result.status == SessionStatus.COMPLETED
        assert result.warnings[0].message == "Empty model response"
