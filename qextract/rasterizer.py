"""
Page Rasterizer
===============
Renders PDF pages to PNG images with PyMuPDF (fitz). The default scale of
2.0 gives the vision model enough resolution for subscripts and small
diagram labels.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterator, Optional

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

DEFAULT_SCALE = 2.0


@dataclass(frozen=True)
class RasterPage:
    """One rendered page (1-indexed)."""
    page_number: int
    png: bytes


class PageRasterizer:
    """Renders PDF pages to PNG bytes at a fixed zoom factor."""

    def __init__(self, scale: float = DEFAULT_SCALE):
        if scale <= 0:
            raise ValueError("Render scale must be positive")
        self.scale = scale

    def _open(self, pdf_path: str) -> fitz.Document:
        if not os.path.exists(pdf_path):
            raise FileNotFoundError(f"PDF not found: {pdf_path}")
        try:
            return fitz.open(pdf_path)
        except Exception as e:
            raise RuntimeError(f"Cannot open PDF {pdf_path}: {e}") from e

    def page_count(self, pdf_path: str) -> int:
        """Get total number of pages in the PDF."""
        with self._open(pdf_path) as doc:
            return doc.page_count

    def iter_pages(
        self,
        pdf_path: str,
        page_range: Optional[tuple[int, int]] = None,
    ) -> Iterator[RasterPage]:
        """
        Yield rendered pages in order.

        Args:
            pdf_path: Path to the PDF file.
            page_range: Optional (start, end) range (1-indexed, inclusive).
        """
        matrix = fitz.Matrix(self.scale, self.scale)

        with self._open(pdf_path) as doc:
            start_page, end_page = 1, doc.page_count
            if page_range:
                start_page = max(1, page_range[0])
                end_page = min(doc.page_count, page_range[1])

            logger.debug(
                f"Rasterizing {pdf_path} pages {start_page}-{end_page} "
                f"at scale {self.scale}"
            )

            for page_idx in range(start_page - 1, end_page):
                pixmap = doc[page_idx].get_pixmap(matrix=matrix)
                yield RasterPage(page_idx + 1, pixmap.tobytes("png"))
