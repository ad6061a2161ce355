"""
Tests for the extraction session controller and the run_extraction façade.
"""

from __future__ import annotations

import threading

import pytest

from pdf_extract.config import ExtractionConfig
from pdf_extract.errors import (
    AlreadyRunning,
    ExtractionFailed,
    ExtractionTimeout,
    RasterizationError,
    SessionCancelled,
)
from pdf_extract.models import (
    ErrorKind,
    Heading,
    HorizontalRule,
    Paragraph,
    SessionStatus,
    Text,
)
from pdf_extract.observers import EditorDocumentStore, InMemoryDocumentStore
from pdf_extract.session import ExtractionSession, SessionHandle, run_extraction


def _page(n: int) -> Paragraph:
    return Paragraph(children=[Text(text=f"Page {n}")])


@pytest.fixture
def make_session(fake_rasterizer_factory):
    def factory(endpoint, pages=3, store=None, observer=None, rasterizer=None, **config):
        return ExtractionSession(
            ExtractionConfig(**config),
            endpoint=endpoint,
            rasterizer=rasterizer or fake_rasterizer_factory(pages),
            store=store if store is not None else InMemoryDocumentStore(),
            observer=observer,
        )
    return factory


# ═══════════════════════════════════════════════════════════════════════════════
# END-TO-END SCENARIO TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSessionScenarios:
    """Full runs through rasterize → extract → translate → insert."""

    def test_partial_failure_is_tolerated(
        self, make_session, fake_doc, fake_endpoint_factory, page_script,
        recording_observer,
    ):
        endpoint = fake_endpoint_factory({
            2: page_script(open_error=ExtractionTimeout("simulated")),
            3: page_script(open_error=ExtractionTimeout("simulated")),
        })
        store = InMemoryDocumentStore()
        session = make_session(
            endpoint, pages=5, store=store, observer=recording_observer, concurrency=2
        )

        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.COMPLETED
        assert result.progress.completed == 5
        assert result.nodes == [_page(1), _page(2), _page(5)]
        assert store.nodes == [_page(1), _page(2), _page(5)]
        assert store.insert_calls == 1
        assert result.failed_pages == [2, 3]
        assert all(e.kind == ErrorKind.TIMEOUT for e in result.page_errors)
        assert len(result.warnings) == 2
        assert len(recording_observer.failures) == 2
        assert recording_observer.results == [result]

    def test_cancel_after_two_pages(
        self, make_session, fake_doc, fake_endpoint_factory, recording_observer_factory
    ):
        endpoint = fake_endpoint_factory()
        store = InMemoryDocumentStore()
        holder = {}

        def hook(progress):
            if progress.completed == 2:
                holder["session"].cancel()

        observer = recording_observer_factory(on_progress_hook=hook)
        session = make_session(
            endpoint, pages=5, store=store, observer=observer, concurrency=1
        )
        holder["session"] = session

        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.CANCELLED
        assert session.status == SessionStatus.CANCELLED
        assert store.nodes == []
        assert store.insert_calls == 0
        assert endpoint.calls == [0, 1]
        with pytest.raises(SessionCancelled):
            result.raise_for_status()

    def test_zero_pages_rejected_at_start(self, make_session, fake_doc, fake_endpoint_factory):
        session = make_session(fake_endpoint_factory(), pages=0)
        with pytest.raises(RasterizationError):
            session.start(fake_doc)
        assert session.status == SessionStatus.IDLE
        assert session.result is None

    def test_single_failing_page(
        self, make_session, fake_doc, fake_endpoint_factory, page_script
    ):
        endpoint = fake_endpoint_factory({
            0: page_script(open_error=ExtractionTimeout("simulated")),
        })
        store = InMemoryDocumentStore()
        session = make_session(endpoint, pages=1, store=store)

        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.FAILED
        assert len(result.page_errors) == 1
        assert store.insert_calls == 0
        with pytest.raises(ExtractionFailed) as exc_info:
            result.raise_for_status()
        assert len(exc_info.value.page_errors) == 1
        assert "page 1: timeout" in str(exc_info.value)

    def test_rasterization_failure_fails_session(
        self, make_session, fake_doc, fake_endpoint_factory, fake_rasterizer_factory,
        recording_observer,
    ):
        rasterizer = fake_rasterizer_factory(3, error=RasterizationError("corrupt xref"))
        endpoint = fake_endpoint_factory()
        session = make_session(
            endpoint, rasterizer=rasterizer, observer=recording_observer
        )

        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.FAILED
        assert "corrupt xref" in result.error
        assert endpoint.calls == []
        assert recording_observer.results[0].status == SessionStatus.FAILED


# ═══════════════════════════════════════════════════════════════════════════════
# STATE MACHINE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSessionLifecycle:
    """Test start / cancel / restart rules."""

    def test_already_running(
        self, make_session, fake_doc, fake_endpoint_factory, page_script
    ):
        endpoint = fake_endpoint_factory({0: page_script(chunks=["<p>"], hang=True)})
        session = make_session(endpoint, pages=1)

        session.start(fake_doc)
        assert session.status == SessionStatus.RUNNING
        with pytest.raises(AlreadyRunning):
            session.start(fake_doc)

        session.cancel()
        result = session.wait(10)
        assert result.status == SessionStatus.CANCELLED

    def test_wait_times_out_while_running(
        self, make_session, fake_doc, fake_endpoint_factory, page_script
    ):
        endpoint = fake_endpoint_factory({0: page_script(chunks=["<p>"], hang=True)})
        session = make_session(endpoint, pages=1)
        session.start(fake_doc)

        assert session.wait(0.05) is None
        assert session.progress().total == 1

        session.cancel()
        assert session.wait(10) is not None

    def test_cancel_is_idempotent(self, make_session, fake_doc, fake_endpoint_factory):
        session = make_session(fake_endpoint_factory(), pages=2)
        session.cancel()
        assert session.status == SessionStatus.IDLE

        session.start(fake_doc)
        result = session.wait(10)
        session.cancel()
        session.cancel()
        assert session.status == result.status == SessionStatus.COMPLETED

    def test_restart_from_terminal_state(
        self, make_session, fake_doc, fake_endpoint_factory
    ):
        store = InMemoryDocumentStore()
        session = make_session(fake_endpoint_factory(), pages=2, store=store)

        session.start(fake_doc)
        session.wait(10)
        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.COMPLETED
        assert store.insert_calls == 2
        assert len(store.nodes) == 4

    def test_progress_after_completion(self, make_session, fake_doc, fake_endpoint_factory):
        session = make_session(fake_endpoint_factory(), pages=3)
        session.start(fake_doc)
        session.wait(10)
        progress = session.progress()
        assert (progress.completed, progress.total) == (3, 3)
        assert progress.fraction == 1.0


# ═══════════════════════════════════════════════════════════════════════════════
# DELIVERY TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestNodeDelivery:
    """Test what reaches the document store."""

    def test_insert_at_position(self, make_session, fake_doc, fake_endpoint_factory):
        existing = Paragraph(children=[Text(text="existing")])
        store = InMemoryDocumentStore([existing])
        session = make_session(fake_endpoint_factory(), pages=2, store=store)

        session.start(fake_doc, position=0)
        session.wait(10)

        assert store.nodes == [_page(1), _page(2), existing]

    def test_page_headers(self, make_session, fake_doc, fake_endpoint_factory):
        store = InMemoryDocumentStore()
        session = make_session(
            fake_endpoint_factory(), pages=2, store=store, page_headers=True
        )
        session.start(fake_doc)
        session.wait(10)

        assert store.nodes == [
            Heading(level=3, children=[Text(text="Page 1")]),
            _page(1),
            HorizontalRule(),
            Heading(level=3, children=[Text(text="Page 2")]),
            _page(2),
        ]

    def test_page_headers_skip_empty_pages(
        self, make_session, fake_doc, fake_endpoint_factory, page_script
    ):
        store = InMemoryDocumentStore()
        endpoint = fake_endpoint_factory({1: page_script(chunks=[])})
        session = make_session(endpoint, pages=3, store=store, page_headers=True)
        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.COMPLETED
        assert store.nodes == [
            Heading(level=3, children=[Text(text="Page 1")]),
            _page(1),
            HorizontalRule(),
            Heading(level=3, children=[Text(text="Page 3")]),
            _page(3),
        ]

    def test_translation_warnings_attached_to_page(
        self, make_session, fake_doc, fake_endpoint_factory, page_script
    ):
        endpoint = fake_endpoint_factory({1: page_script(chunks=["<p>Costs $5</p>"])})
        session = make_session(endpoint, pages=2)
        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.COMPLETED
        assert [w.page_index for w in result.warnings] == [1]
        assert result.nodes[1] == Paragraph(children=[Text(text="Costs $5")])

    def test_store_failure_fails_session(
        self, make_session, fake_doc, fake_endpoint_factory
    ):
        class BrokenStore(EditorDocumentStore):
            def insert(self, nodes, position=None):
                raise RuntimeError("editor detached")

        session = make_session(fake_endpoint_factory(), pages=1, store=BrokenStore())
        session.start(fake_doc)
        result = session.wait(10)

        assert result.status == SessionStatus.FAILED
        assert "editor detached" in result.error
        assert result.nodes == []


# ═══════════════════════════════════════════════════════════════════════════════
# FAÇADE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRunExtraction:
    """Test the run_extraction handle."""

    def test_handle_lifecycle(self, fake_doc, fake_endpoint_factory, fake_rasterizer_factory):
        store = InMemoryDocumentStore()
        done = threading.Event()
        seen = []

        handle = run_extraction(
            fake_doc,
            ExtractionConfig(concurrency=2),
            endpoint=fake_endpoint_factory(),
            rasterizer=fake_rasterizer_factory(3),
            store=store,
        )
        handle.add_done_callback(lambda r: (seen.append(r), done.set()))

        assert isinstance(handle, SessionHandle)
        assert handle.progress().total == 3
        assert done.wait(10)
        result = handle.wait()

        assert seen == [result]
        assert handle.status == SessionStatus.COMPLETED
        assert store.nodes == [_page(1), _page(2), _page(3)]

    def test_callback_after_finish_runs_immediately(
        self, fake_doc, fake_endpoint_factory, fake_rasterizer_factory
    ):
        handle = run_extraction(
            fake_doc,
            endpoint=fake_endpoint_factory(),
            rasterizer=fake_rasterizer_factory(1),
        )
        result = handle.wait(10)
        seen = []
        handle.add_done_callback(seen.append)
        assert seen == [result]

    def test_zero_pages_raises(self, fake_doc, fake_endpoint_factory, fake_rasterizer_factory):
        with pytest.raises(RasterizationError):
            run_extraction(
                fake_doc,
                endpoint=fake_endpoint_factory(),
                rasterizer=fake_rasterizer_factory(0),
            )

    def test_handle_cancel(
        self, fake_doc, fake_endpoint_factory, fake_rasterizer_factory, page_script
    ):
        endpoint = fake_endpoint_factory({
            i: page_script(chunks=["<p>"], hang=True) for i in range(2)
        })
        handle = run_extraction(
            fake_doc,
            endpoint=endpoint,
            rasterizer=fake_rasterizer_factory(2),
        )
        handle.cancel()
        result = handle.wait(10)
        assert result.status == SessionStatus.CANCELLED
        assert result.nodes == []
