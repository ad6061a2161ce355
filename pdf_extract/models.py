"""
Data Models
===========
Pydantic models for pages, extraction tasks, progress and the document
node tree handed to the rich-text editor.
All models are serializable to JSON.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .errors import ExtractionFailed, SessionCancelled


# ─── Enums ────────────────────────────────────────────────────────────────────


class TaskState(str, Enum):
    """Lifecycle of one page's extraction task."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED
        )


class SessionStatus(str, Enum):
    """Lifecycle of an extraction session."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Page-level failure categories."""
    TIMEOUT = "timeout"
    ENDPOINT_ERROR = "endpoint_error"
    MALFORMED_STREAM = "malformed_stream"
    CANCELLED = "cancelled"


# ─── Page Models ──────────────────────────────────────────────────────────────


class PageImage(BaseModel):
    """One rasterized page, ready to be sent to the inference endpoint."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, description="0-based page position")
    data: bytes = Field(repr=False, description="Encoded image bytes")
    format: str = "png"
    width: int = 0
    height: int = 0
    native_text: str = Field(
        default="",
        repr=False,
        description="Selectable text found on the page, if any",
    )


class PageError(BaseModel):
    """Why a page failed."""
    page_index: int
    kind: ErrorKind
    reason: str


class PageWarning(BaseModel):
    """Non-fatal issue attached to a page slot."""
    page_index: int
    message: str


class ExtractionTask(BaseModel):
    """Extraction state for a single page."""
    page_index: int
    state: TaskState = TaskState.PENDING
    accumulated_markup: str = ""
    error: Optional[PageError] = None
    attempts: int = 0
    source: Literal["model", "native_text"] = "model"
    warnings: list[PageWarning] = Field(default_factory=list)


class ExtractionProgress(BaseModel):
    """Snapshot of how many pages reached a terminal state."""
    model_config = ConfigDict(frozen=True)

    completed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    @computed_field
    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total, 4)


# ─── Document Nodes ───────────────────────────────────────────────────────────


class Text(BaseModel):
    """Run of plain text with optional formatting marks."""
    type: Literal["text"] = "text"
    text: str
    marks: list[str] = Field(default_factory=list)


class MathInline(BaseModel):
    """Inline LaTeX expression ($…$)."""
    type: Literal["math_inline"] = "math_inline"
    latex: str


InlineNode = Annotated[Union[Text, MathInline], Field(discriminator="type")]


class Heading(BaseModel):
    type: Literal["heading"] = "heading"
    level: int = Field(ge=1, le=6)
    children: list[InlineNode] = Field(default_factory=list)


class Paragraph(BaseModel):
    type: Literal["paragraph"] = "paragraph"
    children: list[InlineNode] = Field(default_factory=list)


class Blockquote(BaseModel):
    type: Literal["blockquote"] = "blockquote"
    children: list[InlineNode] = Field(default_factory=list)


class ListBlock(BaseModel):
    """Ordered or unordered list; each item is a sequence of block nodes."""
    type: Literal["list"] = "list"
    ordered: bool = False
    items: list[list[DocumentNode]] = Field(default_factory=list)


class Table(BaseModel):
    """Rows of cells; each cell is a sequence of inline nodes."""
    type: Literal["table"] = "table"
    rows: list[list[list[InlineNode]]] = Field(default_factory=list)


class MathBlock(BaseModel):
    """Standalone LaTeX expression ($$…$$)."""
    type: Literal["math_block"] = "math_block"
    latex: str


class CodeBlock(BaseModel):
    type: Literal["code_block"] = "code_block"
    code: str


class HorizontalRule(BaseModel):
    type: Literal["horizontal_rule"] = "horizontal_rule"


DocumentNode = Annotated[
    Union[
        Heading,
        Paragraph,
        Blockquote,
        ListBlock,
        Table,
        MathBlock,
        CodeBlock,
        HorizontalRule,
    ],
    Field(discriminator="type"),
]

# Fix forward reference
ListBlock.model_rebuild()


# ─── Session Result ──────────────────────────────────────────────────────────


class SessionResult(BaseModel):
    """
    Terminal outcome of an extraction session.
    Nodes are only populated for completed sessions.
    """
    status: SessionStatus
    nodes: list[DocumentNode] = Field(default_factory=list)
    progress: ExtractionProgress = Field(default_factory=ExtractionProgress)
    page_errors: list[PageError] = Field(default_factory=list)
    warnings: list[PageWarning] = Field(default_factory=list)
    error: Optional[str] = None
    tasks: list[ExtractionTask] = Field(default_factory=list)

    @computed_field
    @property
    def failed_pages(self) -> list[int]:
        return [e.page_index for e in self.page_errors]

    def raise_for_status(self) -> None:
        """Raise the aggregate error for failed or cancelled sessions."""
        if self.status == SessionStatus.FAILED:
            raise ExtractionFailed(
                self.error or "Extraction failed", self.page_errors
            )
        if self.status == SessionStatus.CANCELLED:
            raise SessionCancelled("Extraction session was cancelled")
