"""
Page Rasterizer
===============
Renders PDF pages to encoded images using PyMuPDF (fitz).
Also captures each page's selectable text for the native-text shortcut.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

from .errors import RasterizationError
from .models import PageImage

logger = logging.getLogger(__name__)


class SourceDocument:
    """
    Immutable handle on a PDF held in memory.
    The pipeline reads it but never mutates it.
    """

    def __init__(self, data: bytes, name: str = "document.pdf"):
        self._data = bytes(data)
        self._name = name

    @classmethod
    def from_path(cls, path: str) -> "SourceDocument":
        """Load a PDF from disk."""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise RasterizationError(f"Cannot read PDF {path}: {e}") from e
        return cls(data, name=Path(path).name)

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "document.pdf") -> "SourceDocument":
        return cls(data, name=name)

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def name(self) -> str:
        return self._name

    @property
    def size_bytes(self) -> int:
        return len(self._data)

    def sha256(self) -> str:
        """SHA-256 of the document bytes."""
        return hashlib.sha256(self._data).hexdigest()

    def __repr__(self) -> str:
        return f"SourceDocument(name={self._name!r}, size={len(self._data)})"


class PageRasterizer:
    """
    Turns a SourceDocument into one PageImage per page.

    Images are produced eagerly, in ascending page order, exactly once per
    page. Any failure to open or render the document is session-fatal.
    """

    def __init__(
        self,
        dpi: int = 144,
        image_format: str = "png",
        page_range: Optional[tuple[int, int]] = None,
    ):
        self.dpi = dpi
        self.image_format = "jpeg" if image_format == "jpg" else image_format
        self.page_range = page_range

    def _open(self, doc: SourceDocument) -> fitz.Document:
        if not doc.data:
            raise RasterizationError(f"{doc.name} is empty (zero bytes)")
        try:
            return fitz.open(stream=doc.data, filetype="pdf")
        except Exception as e:
            raise RasterizationError(f"Cannot open {doc.name}: {e}") from e

    def _resolve_range(self, total_pages: int) -> tuple[int, int]:
        """Determine page range (1-indexed, inclusive)."""
        start_page = 1
        end_page = total_pages
        if self.page_range:
            start_page = max(1, self.page_range[0])
            end_page = min(total_pages, self.page_range[1])
        return start_page, end_page

    def page_count(self, doc: SourceDocument) -> int:
        """Number of pages that rasterize() will produce."""
        with self._open(doc) as pdf:
            start_page, end_page = self._resolve_range(pdf.page_count)
        return max(0, end_page - start_page + 1)

    def rasterize(self, doc: SourceDocument) -> list[PageImage]:
        """
        Render every page in range.

        Returns:
            PageImage list with index 0..N-1 in page order.

        Raises:
            RasterizationError: unreadable, corrupt, empty or zero-page source.
        """
        images: list[PageImage] = []

        with self._open(doc) as pdf:
            start_page, end_page = self._resolve_range(pdf.page_count)
            if end_page < start_page:
                raise RasterizationError(f"{doc.name} has no pages to extract")

            logger.info(
                f"Rasterizing {doc.name} "
                f"(pages {start_page} to {end_page}, {self.dpi} dpi)"
            )

            for page_idx in range(start_page - 1, end_page):
                try:
                    page = pdf[page_idx]
                    pix = page.get_pixmap(dpi=self.dpi)
                    data = pix.tobytes(self.image_format)
                    native_text = page.get_text("text").strip()
                except Exception as e:
                    raise RasterizationError(
                        f"Failed rendering page {page_idx + 1} of {doc.name}: {e}"
                    ) from e

                images.append(PageImage(
                    index=len(images),
                    data=data,
                    format=self.image_format,
                    width=pix.width,
                    height=pix.height,
                    native_text=native_text,
                ))

        logger.debug(f"Rasterized {len(images)} page(s) from {doc.name}")
        return images
