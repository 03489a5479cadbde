"""
Text Extractor
==============
Pulls positioned text fragments from a PDF's vector text layer using
PyMuPDF (fitz). No rendering and no image OCR: a scanned PDF without a
text layer simply yields zero fragments.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, Union

import fitz  # PyMuPDF

from .exceptions import EmptyTextLayer, UnreadablePDF
from .models import TextFragment

logger = logging.getLogger(__name__)

PdfSource = Union[str, Path, bytes]


class TextExtractor:
    """
    Handles PDF ingestion and word-level text extraction.

    Each word of the text layer becomes one TextFragment carrying its page
    index and bounding box, in reading order per page.
    """

    def __init__(self, page_range: Optional[tuple[int, int]] = None):
        self.page_range = page_range
        self.page_count = 0

    def open(self, source: PdfSource, filename: str = "") -> fitz.Document:
        """Open a PDF from a path or raw bytes, rejecting anything else."""
        name = filename or (str(source) if not isinstance(source, bytes) else "")
        try:
            if isinstance(source, bytes):
                doc = fitz.open(stream=source, filetype="pdf")
            else:
                doc = fitz.open(str(source))
        except (RuntimeError, ValueError, OSError) as e:
            raise UnreadablePDF(
                f"Cannot open PDF: {e}", filename=name, original_error=e
            ) from e

        if not doc.is_pdf:
            doc.close()
            raise UnreadablePDF(
                "File is not a PDF. Only Tech Records PDF exports are accepted.",
                filename=name,
            )
        if doc.needs_pass:
            doc.close()
            raise UnreadablePDF("PDF is password-protected", filename=name)
        return doc

    def extract(
        self,
        source: PdfSource,
        filename: str = "",
        progress_callback: Optional[Callable[[int, int], None]] = None,
        require_text: bool = False,
    ) -> list[TextFragment]:
        """
        Extract all text fragments from the PDF.

        Args:
            source: Path to the PDF or its raw bytes.
            filename: Display name used in errors and logs.
            progress_callback: Optional callable(current_page, total_pages).
            require_text: Raise EmptyTextLayer instead of returning [].

        Returns:
            Flat list of fragments ordered by page, then top-to-bottom,
            then left-to-right. Empty when the PDF has no text layer.

        Raises:
            UnreadablePDF: If the container cannot be parsed.
            EmptyTextLayer: If require_text is set and no text was found.
        """
        fragments: list[TextFragment] = []

        with self.open(source, filename) as doc:
            total_pages = doc.page_count
            self.page_count = total_pages

            start_page = 1
            end_page = total_pages
            if self.page_range:
                start_page = max(1, self.page_range[0])
                end_page = min(total_pages, self.page_range[1])

            logger.info(
                f"Extracting text from {filename or 'PDF'} "
                f"(pages {start_page} to {end_page})"
            )

            for page_idx in range(start_page - 1, end_page):
                page = doc[page_idx]
                try:
                    words = page.get_text("words", sort=True)
                except RuntimeError as e:
                    raise UnreadablePDF(
                        f"Cannot read page {page_idx + 1}: {e}",
                        filename=filename,
                        original_error=e,
                    ) from e

                page_fragments = [
                    TextFragment(
                        text=w[4],
                        page_index=page_idx,
                        x=w[0],
                        y=w[1],
                        width=max(0.0, w[2] - w[0]),
                        height=max(0.0, w[3] - w[1]),
                    )
                    for w in words
                    if w[4].strip()
                ]
                page_fragments.sort(key=lambda f: (round(f.y, 1), f.x))
                fragments.extend(page_fragments)

                logger.debug(
                    f"Page {page_idx + 1}: {len(page_fragments)} fragments"
                )

                if progress_callback:
                    progress_callback(
                        page_idx - start_page + 2, end_page - start_page + 1
                    )

        if not fragments:
            logger.warning(
                f"No text layer found in {filename or 'PDF'} "
                f"({self.page_count} pages)"
            )
            if require_text:
                raise EmptyTextLayer(
                    "No text layer found: the PDF may be a scanned image. "
                    "No job rows could be read.",
                    {"filename": filename, "pages": self.page_count},
                )
        else:
            logger.info(f"Extracted {len(fragments)} text fragments")

        return fragments
