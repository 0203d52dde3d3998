"""PDF parser - layout analysis with PyMuPDF.

Headings are inferred from font size: the body size is the size carrying
the most characters, and blocks set noticeably larger are headings. Distinct
heading sizes map to levels, largest first.
"""

import bisect
import logging
from collections import Counter
from dataclasses import dataclass
from uuid import UUID

import fitz  # PyMuPDF

from backend.ingest.docs.parser import HeadingMark, ParseResult, build_section_tree, detect_language
from backend.ingest.errors import ParseError
from backend.ingest.models import BoundingBox

logger = logging.getLogger(__name__)

PDF_MIME_TYPES = ("application/pdf",)

BLOCK_SEPARATOR = "\n\n"
MAX_HEADING_CHARS = 200
MAX_HEADING_LEVEL = 6


@dataclass
class TextBlock:
    """Text block extracted from a page."""

    text: str
    page_number: int
    bbox: tuple[float, float, float, float]
    font_size: float
    char_sizes: Counter


class PdfParser:
    """Parses PDFs into a section tree with page numbers and coordinates."""

    def __init__(
        self,
        *,
        heading_ratio: float = 1.15,
        min_heading_confidence: float = 0.5,
        preamble_confidence: float = 0.5,
    ) -> None:
        self._heading_ratio = heading_ratio
        self._min_heading_confidence = min_heading_confidence
        self._preamble_confidence = preamble_confidence

    def parse(self, doc_id: UUID, content: bytes, mime_type: str) -> ParseResult:
        blocks, page_count = self._extract_blocks(content)

        text_parts: list[str] = []
        block_starts: list[int] = []
        page_starts: list[int] = []
        offset = 0
        current_page = 0

        for block in blocks:
            if text_parts:
                text_parts.append(BLOCK_SEPARATOR)
                offset += len(BLOCK_SEPARATOR)
            if block.page_number != current_page:
                page_starts.append(offset)
                current_page = block.page_number
            block_starts.append(offset)
            text_parts.append(block.text)
            offset += len(block.text)

        text = "".join(text_parts)
        if not text.strip():
            raise ParseError("empty document")

        page_numbers = sorted({block.page_number for block in blocks})

        def page_at(char_offset: int) -> int | None:
            index = bisect.bisect_right(page_starts, char_offset) - 1
            return page_numbers[max(index, 0)]

        headings = self._find_headings(blocks, block_starts)
        sections = build_section_tree(
            doc_id,
            text,
            headings,
            preamble_confidence=self._preamble_confidence,
            page_at=page_at,
        )

        logger.debug(
            "Parsed PDF",
            extra={
                "structured": {
                    "doc_id": str(doc_id),
                    "pages": page_count,
                    "blocks": len(blocks),
                    "headings": len(headings),
                }
            },
        )

        return ParseResult(
            sections=sections,
            text=text,
            page_count=page_count,
            language=detect_language(text),
        )

    def _extract_blocks(self, content: bytes) -> tuple[list[TextBlock], int]:
        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ParseError(f"corrupt PDF: {e}") from e

        with doc:
            if doc.needs_pass:
                raise ParseError("encrypted PDF")

            blocks: list[TextBlock] = []
            try:
                for page_num, page in enumerate(doc, start=1):
                    for block in page.get_text("dict")["blocks"]:
                        if block["type"] != 0:  # images
                            continue
                        text_block = self._read_block(block, page_num)
                        if text_block is not None:
                            blocks.append(text_block)
            except (RuntimeError, ValueError) as e:
                raise ParseError(f"corrupt PDF: {e}") from e

            return blocks, doc.page_count

    def _read_block(self, block: dict, page_number: int) -> TextBlock | None:
        lines: list[str] = []
        char_sizes: Counter = Counter()
        max_font_size = 0.0

        for line in block.get("lines", []):
            line_text = ""
            for span in line.get("spans", []):
                span_text = span["text"]
                size = round(span.get("size", 12) * 2) / 2
                line_text += span_text
                if span_text.strip():
                    char_sizes[size] += len(span_text.strip())
                    max_font_size = max(max_font_size, size)
            lines.append(line_text.rstrip())

        block_text = "\n".join(lines).strip()
        if not block_text:
            return None

        return TextBlock(
            text=block_text,
            page_number=page_number,
            bbox=tuple(block["bbox"]),
            font_size=max_font_size,
            char_sizes=char_sizes,
        )

    def _find_headings(self, blocks: list[TextBlock], starts: list[int]) -> list[HeadingMark]:
        size_totals: Counter = Counter()
        for block in blocks:
            size_totals.update(block.char_sizes)
        if not size_totals:
            return []

        body_size = size_totals.most_common(1)[0][0]
        if body_size <= 0:
            return []

        candidates: list[tuple[int, TextBlock, float]] = []
        for start, block in zip(starts, blocks):
            ratio = block.font_size / body_size
            if ratio < self._heading_ratio or len(block.text) > MAX_HEADING_CHARS:
                continue
            confidence = max(0.0, min(1.0, 0.5 + (ratio - self._heading_ratio)))
            if confidence < self._min_heading_confidence:
                continue
            candidates.append((start, block, confidence))

        heading_sizes = sorted({block.font_size for _, block, _ in candidates}, reverse=True)
        level_for = {
            size: min(index + 1, MAX_HEADING_LEVEL) for index, size in enumerate(heading_sizes)
        }

        return [
            HeadingMark(
                start=start,
                level=level_for[block.font_size],
                title=" ".join(block.text.split()),
                confidence=confidence,
                bbox=BoundingBox(
                    x0=block.bbox[0], y0=block.bbox[1], x1=block.bbox[2], y1=block.bbox[3]
                ),
            )
            for start, block, confidence in candidates
        ]
