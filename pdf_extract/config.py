"""
Configuration
=============
Extraction settings, the static instruction prompt, and logging setup.

Usage:
    config = ExtractionConfig(concurrency=2, page_timeout_s=90)
    config = ExtractionConfig.from_env()
    setup_logging(config)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

DEFAULT_INSTRUCTION_PROMPT = "\n".join([
    "You are an expert in document digitization (OCR + structuring).",
    "",
    "Goal: produce COMPLETE HTML (no CSS) that faithfully represents the page, "
    "in reading order.",
    "",
    "Output rules:",
    "- Return HTML only (no Markdown, no conversational text).",
    "- Use standard tags: <h1>…<h6>, <p>, <ul>/<ol>/<li>, <table> (for tables), "
    "<blockquote>.",
    "- For formulas, use LaTeX between $…$ (inline) or $$…$$ (block).",
    "- Clean indentation and line breaks.",
    "- Ignore page numbers (e.g. 'Page 1', '1/12', etc.).",
    "",
    "IMPORTANT: do not skip non-textual content.",
    "If the page contains a diagram / figure / chart / map / annotated image:",
    "- Add a dedicated block at the right place in the flow, as:",
    "  <h4>Figure — {title if any}</h4>",
    "  <p>…clear description…</p>",
    "  <ul><li>…elements/labels…</li></ul>",
    "- Describe what is shown (relations, arrows, steps, legend).",
    "- Copy the visible labels/values (axes, units, names, annotations).",
    "- If an element is partially illegible, say so explicitly but keep a "
    "descriptive block.",
    "",
    "If you detect several figures, create one block per figure.",
])


class FailurePolicy(str, Enum):
    """How the session reacts to a page-level failure."""
    TOLERATE = "tolerate"
    ABORT = "abort"


@dataclass
class ExtractionConfig:
    """Configuration for an extraction session."""

    # Concurrency
    concurrency: int = 3

    # Prompt
    prompt_override: Optional[str] = None

    # Per-page policy
    page_timeout_s: float = 120.0
    max_retries: int = 0
    retry_backoff_s: float = 2.0
    failure_policy: FailurePolicy = FailurePolicy.TOLERATE

    # Rasterization
    dpi: int = 144
    image_format: str = "png"
    page_range: Optional[tuple[int, int]] = None

    # Text PDFs: skip the model when the page already has selectable text
    prefer_native_text: bool = False
    native_text_min_chars: int = 40

    # Output
    page_headers: bool = False

    # Model endpoint
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_output_tokens: int = 4096

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.page_timeout_s <= 0:
            raise ValueError("page_timeout_s must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.image_format not in ("png", "jpeg", "jpg"):
            raise ValueError(f"Unsupported image format: {self.image_format}")
        self.failure_policy = FailurePolicy(self.failure_policy)

    @property
    def instruction(self) -> str:
        """The system instruction sent with every page."""
        if self.prompt_override and self.prompt_override.strip():
            return self.prompt_override
        return DEFAULT_INSTRUCTION_PROMPT

    @classmethod
    def from_env(cls, **overrides) -> "ExtractionConfig":
        """Build a config from PDF_EXTRACT_* / OPENAI_* environment variables."""
        api_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
        # Users often set env vars with quotes
        if len(api_key) >= 2 and api_key[0] == api_key[-1] and api_key[0] in "\"'":
            api_key = api_key[1:-1].strip()

        base_url = (
            os.environ.get("PDF_EXTRACT_BASE_URL")
            or os.environ.get("OPENAI_BASE_URL")
            or ""
        ).strip().rstrip("/")

        values = dict(
            api_key=api_key or None,
            base_url=base_url or None,
            model=(os.environ.get("PDF_EXTRACT_MODEL") or cls.model).strip(),
            concurrency=int(os.environ.get("PDF_EXTRACT_CONCURRENCY", cls.concurrency)),
            page_timeout_s=float(
                os.environ.get("PDF_EXTRACT_TIMEOUT_S", cls.page_timeout_s)
            ),
            max_retries=int(os.environ.get("PDF_EXTRACT_MAX_RETRIES", cls.max_retries)),
            log_level=os.environ.get("PDF_EXTRACT_LOG_LEVEL", cls.log_level),
        )
        values.update(overrides)
        return cls(**values)


def setup_logging(config: ExtractionConfig) -> logging.Logger:
    """Configure the pdf_extract package logger based on config."""
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    package_logger = logging.getLogger("pdf_extract")
    package_logger.setLevel(log_level)

    # Console handler
    if not package_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        package_logger.addHandler(console)

    # File handler
    if config.log_file:
        log_path = Path(config.log_file)
        already = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename) == log_path.resolve()
            for h in package_logger.handlers
        )
        if not already:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(
                logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
            )
            package_logger.addHandler(file_handler)

    return package_logger
