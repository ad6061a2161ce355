"""
Extraction Report
=================
Post-run summary of a session.

After each extraction, summarizes:
    - Pages processed / succeeded / failed / cancelled
    - Failed pages with the reason for each
    - Error kind breakdown
    - Document node breakdown by type
    - Pages answered from native text instead of the model
    - Translation and page warnings

Never hides a failed page.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from .models import ListBlock, PageError, SessionResult, SessionStatus, TaskState

logger = logging.getLogger(__name__)


class ExtractionReport(BaseModel):
    """Summary of one extraction session."""
    status: SessionStatus
    total_pages: int = 0
    pages_succeeded: int = 0
    pages_failed: int = 0
    pages_cancelled: int = 0
    native_text_pages: list[int] = Field(default_factory=list)
    failed_pages: list[PageError] = Field(default_factory=list)
    error_breakdown: dict[str, int] = Field(default_factory=dict)
    node_breakdown: dict[str, int] = Field(default_factory=dict)
    warning_count: int = 0
    total_attempts: int = 0
    error: Optional[str] = None

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.total_pages == 0:
            return 0.0
        return round(self.pages_succeeded / self.total_pages * 100, 2)


def _count_nodes(nodes: list, counts: Counter):
    for node in nodes:
        counts[node.type] += 1
        if isinstance(node, ListBlock):
            for item in node.items:
                _count_nodes(item, counts)


class ReportBuilder:
    """
    Builds an ExtractionReport from a SessionResult.
    """

    def build(self, result: SessionResult, log: bool = True) -> ExtractionReport:
        """
        Summarize a finished session.

        Args:
            result: Terminal session result.
            log: Write the summary to the package logger.

        Returns:
            ExtractionReport for the session.
        """
        states = Counter(t.state for t in result.tasks)
        node_counts: Counter = Counter()
        _count_nodes(result.nodes, node_counts)

        report = ExtractionReport(
            status=result.status,
            total_pages=result.progress.total,
            pages_succeeded=states.get(TaskState.SUCCEEDED, 0),
            pages_failed=states.get(TaskState.FAILED, 0),
            pages_cancelled=states.get(TaskState.CANCELLED, 0),
            native_text_pages=[
                t.page_index for t in result.tasks
                if t.state == TaskState.SUCCEEDED and t.source == "native_text"
            ],
            failed_pages=sorted(result.page_errors, key=lambda e: e.page_index),
            error_breakdown=dict(Counter(e.kind.value for e in result.page_errors)),
            node_breakdown=dict(node_counts),
            warning_count=len(result.warnings),
            total_attempts=sum(t.attempts for t in result.tasks),
            error=result.error,
        )

        if log:
            self._log(report)
        return report

    def _log(self, report: ExtractionReport):
        logger.info("=" * 60)
        logger.info("EXTRACTION REPORT")
        logger.info("=" * 60)
        logger.info(f"Status: {report.status.value}")
        logger.info(
            f"Pages Succeeded: {report.pages_succeeded}/{report.total_pages} "
            f"({report.success_rate}%)"
        )
        logger.info(f"Pages Failed: {report.pages_failed}")
        logger.info(f"Pages Cancelled: {report.pages_cancelled}")
        if report.native_text_pages:
            logger.info(f"Native Text Pages: {len(report.native_text_pages)}")
        logger.info(f"Warnings: {report.warning_count}")

        for page_error in report.failed_pages:
            logger.info(
                f"  • page {page_error.page_index + 1}: "
                f"{page_error.kind.value} ({page_error.reason})"
            )

        if report.node_breakdown:
            logger.info("Node Breakdown:")
            for node_type, count in sorted(report.node_breakdown.items()):
                logger.info(f"  • {node_type}: {count}")

        logger.info("=" * 60)
