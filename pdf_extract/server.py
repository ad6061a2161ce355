"""
HTTP Microservice
=================
Flask-based HTTP API for the extraction pipeline.

Lets a web editor run extractions as a service:
    - Health checks
    - Async extraction sessions
    - Progress polling
    - Cancellation

Endpoints:
    POST   /api/extract                     → Start extracting a PDF
    GET    /api/sessions/<id>               → Session status and progress
    GET    /api/sessions/<id>/result        → Nodes (?format=native|editor)
    POST   /api/sessions/<id>/cancel        → Cancel a running session
    DELETE /api/sessions/<id>               → Cancel and forget a session
    GET    /api/health                      → Health check
    GET    /api/info                        → Service version info
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
import time
import uuid

from flask import Flask, jsonify, request
from flask_cors import CORS

from . import __version__
from .config import ExtractionConfig
from .editor_format import to_editor_value
from .errors import EndpointError, RasterizationError
from .models import SessionStatus
from .observers import InMemoryDocumentStore, LoggingObserver
from .report import ReportBuilder
from .rasterizer import SourceDocument
from .session import ExtractionSession

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

# ─── In-memory session registry ───────────────────────────────────────────────

sessions: dict[str, dict] = {}
sessions_lock = threading.Lock()


def create_app(config: dict = None) -> Flask:
    """
    Create and configure the Flask app.

    Recognized keys:
        EXTRACTION_CONFIG: base ExtractionConfig (default: from environment)
        ENDPOINT: InferenceEndpoint to use instead of the OpenAI client
    """
    if config:
        app.config.update(config)

    app.config.setdefault("MAX_CONTENT_LENGTH", 200 * 1024 * 1024)  # 200MB
    if app.config.get("EXTRACTION_CONFIG") is None:
        app.config["EXTRACTION_CONFIG"] = ExtractionConfig.from_env()
    app.config.setdefault("ENDPOINT", None)
    return app


def _get_entry(session_id: str):
    with sessions_lock:
        return sessions.get(session_id)


def _build_config(params) -> ExtractionConfig:
    """Overlay request parameters on the service's base config."""
    base = app.config.get("EXTRACTION_CONFIG") or ExtractionConfig.from_env()
    overrides = {}

    if params.get("concurrency") not in (None, ""):
        overrides["concurrency"] = int(params["concurrency"])
    if params.get("policy"):
        overrides["failure_policy"] = params["policy"]
    if params.get("max_retries") not in (None, ""):
        overrides["max_retries"] = int(params["max_retries"])
    if params.get("page_headers") is not None:
        overrides["page_headers"] = str(params["page_headers"]).lower() in ("1", "true", "yes")

    page_start = params.get("page_start")
    page_end = params.get("page_end")
    if page_start or page_end:
        overrides["page_range"] = (int(page_start or 1), int(page_end or 99999))

    return dataclasses.replace(base, **overrides)


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    with sessions_lock:
        entries = list(sessions.values())
    active = sum(1 for e in entries if e["session"].status == SessionStatus.RUNNING)
    return jsonify({
        "status": "healthy",
        "service": "pdf-extract",
        "version": __version__,
        "active_sessions": active,
        "total_sessions": len(entries),
    })


@app.route("/api/info", methods=["GET"])
def info():
    """Service version and capability info."""
    config = app.config.get("EXTRACTION_CONFIG") or ExtractionConfig()
    return jsonify({
        "version": __version__,
        "engine": "PyMuPDF",
        "model": config.model,
        "concurrency": config.concurrency,
        "page_timeout_s": config.page_timeout_s,
        "capabilities": [
            "page_rasterization",
            "streaming_extraction",
            "math_translation",
            "editor_value",
            "cancellation",
        ],
        "output_formats": ["native", "editor"],
        "supported_formats": ["pdf"],
    })


# ─── Extract Endpoint ─────────────────────────────────────────────────────────


@app.route("/api/extract", methods=["POST"])
def extract_pdf():
    """
    Start extracting a PDF.

    Accepts either:
        - A file upload (multipart/form-data)
        - A JSON body with file_path pointing to an existing file

    Returns a session ID for status polling.
    """
    if "file" in request.files:
        file = request.files["file"]
        if not file.filename:
            return jsonify({"error": "No file selected"}), 400
        doc = SourceDocument.from_bytes(file.read(), name=file.filename)
        params = request.form
    elif request.is_json:
        params = request.get_json() or {}
        pdf_path = params.get("file_path")
        if not pdf_path or not os.path.exists(pdf_path):
            return jsonify({"error": f"File not found: {pdf_path}"}), 404
        try:
            doc = SourceDocument.from_path(pdf_path)
        except RasterizationError as e:
            return jsonify({"error": str(e)}), 422
    else:
        return jsonify({
            "error": "Provide a file upload or JSON with file_path"
        }), 400

    try:
        config = _build_config(params)
    except (TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid parameters: {e}"}), 400

    try:
        session = ExtractionSession(
            config,
            endpoint=app.config.get("ENDPOINT"),
            store=InMemoryDocumentStore(),
            observer=LoggingObserver(),
        )
    except EndpointError as e:
        return jsonify({"error": str(e)}), 503

    try:
        session.start(doc)
    except RasterizationError as e:
        return jsonify({"error": str(e)}), 422

    session_id = str(uuid.uuid4())
    with sessions_lock:
        sessions[session_id] = {
            "id": session_id,
            "session": session,
            "filename": doc.name,
            "created_at": time.time(),
        }

    logger.info(f"Session {session_id}: extracting {doc.name}")
    return jsonify({
        "session_id": session_id,
        "status": SessionStatus.RUNNING.value,
        "total_pages": session.progress().total,
        "message": "Extraction started",
    }), 202


# ─── Session Endpoints ────────────────────────────────────────────────────────


@app.route("/api/sessions/<session_id>", methods=["GET"])
def get_session(session_id: str):
    """Status and progress of an extraction session."""
    entry = _get_entry(session_id)
    if not entry:
        return jsonify({"error": "Session not found"}), 404

    session = entry["session"]
    result = session.result
    return jsonify({
        "id": session_id,
        "status": session.status.value,
        "filename": entry["filename"],
        "created_at": entry["created_at"],
        "progress": session.progress().model_dump(),
        "failed_pages": result.failed_pages if result else [],
        "error": result.error if result else None,
    })


@app.route("/api/sessions/<session_id>/result", methods=["GET"])
def get_result(session_id: str):
    """Full result of a finished session."""
    entry = _get_entry(session_id)
    if not entry:
        return jsonify({"error": "Session not found"}), 404

    fmt = request.args.get("format", "native")
    if fmt not in ("native", "editor"):
        return jsonify({"error": f"Unknown format: {fmt}"}), 400

    session = entry["session"]
    result = session.result
    if result is None:
        return jsonify({
            "error": f"Session not finished, status: {session.status.value}",
            "status": session.status.value,
        }), 409

    report = ReportBuilder().build(result, log=False)
    payload = {
        "id": session_id,
        "status": result.status.value,
        "report": report.model_dump(mode="json"),
        "warnings": [w.model_dump() for w in result.warnings],
        "page_errors": [e.model_dump(mode="json") for e in result.page_errors],
        "error": result.error,
    }
    if fmt == "editor":
        payload["value"] = to_editor_value(result.nodes)
    else:
        payload["nodes"] = [n.model_dump(mode="json") for n in result.nodes]
    return jsonify(payload)


@app.route("/api/sessions/<session_id>/cancel", methods=["POST"])
def cancel_session(session_id: str):
    """Cancel a running session."""
    entry = _get_entry(session_id)
    if not entry:
        return jsonify({"error": "Session not found"}), 404

    session = entry["session"]
    session.cancel()
    return jsonify({
        "id": session_id,
        "status": session.status.value,
        "message": "Cancellation requested",
    })


@app.route("/api/sessions/<session_id>", methods=["DELETE"])
def delete_session(session_id: str):
    """Cancel a session if running and drop it from the registry."""
    with sessions_lock:
        entry = sessions.pop(session_id, None)
    if not entry:
        return jsonify({"error": "Session not found"}), 404

    entry["session"].cancel()
    logger.info(f"Session {session_id}: removed from memory")
    return jsonify({
        "success": True,
        "message": f"Session {session_id} removed from memory",
    })


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
):
    """Start the microservice server."""
    create_app()
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
