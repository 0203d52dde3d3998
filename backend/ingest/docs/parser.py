"""Parser capability and the section-tree builder shared by format variants."""

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from backend.ingest.errors import ParseError, UnsupportedFormatError
from backend.ingest.models import BoundingBox, DocumentSection


@dataclass
class HeadingMark:
    """A heading found in the extracted text, before the tree is built."""

    start: int
    level: int
    title: str
    confidence: float = 1.0
    bbox: BoundingBox | None = None


@dataclass
class ParseResult:
    """Extracted text plus its section tree."""

    sections: list[DocumentSection]
    text: str
    page_count: int | None = None
    language: str | None = None


class Parser(Protocol):
    """Format variant turning raw bytes into a section tree."""

    def parse(self, doc_id: UUID, content: bytes, mime_type: str) -> ParseResult:
        """Parse a document.

        Raises:
            ParseError: Corrupt input, unsupported sub-format, or no text
        """
        ...


class ParserRegistry:
    """Selects the parser variant for a mime type."""

    def __init__(self) -> None:
        self._by_mime: dict[str, Parser] = {}

    def register(self, mime_types: Iterable[str], parser: Parser) -> None:
        for mime_type in mime_types:
            self._by_mime[mime_type] = parser

    def get(self, mime_type: str) -> Parser:
        try:
            return self._by_mime[mime_type]
        except KeyError as e:
            raise UnsupportedFormatError(mime_type) from e

    def supports(self, mime_type: str) -> bool:
        return mime_type in self._by_mime

    def parse(self, doc_id: UUID, content: bytes, mime_type: str) -> ParseResult:
        """Parse with the variant registered for ``mime_type``."""
        return self.get(mime_type).parse(doc_id, content, mime_type)


@dataclass
class _Node:
    start: int
    level: int
    title: str | None
    confidence: float
    bbox: BoundingBox | None
    end: int = -1
    parent: "_Node | None" = None
    children: list["_Node"] = field(default_factory=list)
    section: DocumentSection | None = None


def build_section_tree(
    doc_id: UUID,
    text: str,
    headings: Sequence[HeadingMark],
    *,
    preamble_confidence: float = 1.0,
    page_at: Callable[[int], int | None] | None = None,
) -> list[DocumentSection]:
    """Build a section tree from headings found in ``text``.

    A heading opens a section that runs until the next heading of the same
    or a shallower level. Text before the first heading becomes a level-1
    preamble section. Each section's ``content`` is its own text, from its
    start to its first child's start, so the own spans partition ``text``.

    Args:
        doc_id: Owning document
        text: Full extracted text
        headings: Heading marks with strictly increasing ``start`` offsets
        preamble_confidence: Confidence assigned to the preamble section
        page_at: Maps a character offset to its 1-based page number

    Returns:
        Sections in document order (pre-order)
    """
    if not text.strip():
        raise ParseError("empty document")

    marks = sorted(headings, key=lambda h: h.start)
    for previous, current in zip(marks, marks[1:]):
        if current.start <= previous.start:
            raise ParseError(f"heading offsets not increasing at {current.start}")
    if marks and not 0 <= marks[0].start < len(text):
        raise ParseError(f"heading offset {marks[0].start} outside text")
    if marks and marks[-1].start >= len(text):
        raise ParseError(f"heading offset {marks[-1].start} outside text")

    roots: list[_Node] = []
    ordered: list[_Node] = []

    if marks and marks[0].start > 0 and not text[: marks[0].start].strip():
        # Leading whitespace belongs to the first heading
        first = marks[0]
        marks[0] = HeadingMark(0, first.level, first.title, first.confidence, first.bbox)

    if not marks or marks[0].start > 0:
        preamble = _Node(
            start=0,
            level=1,
            title=None,
            confidence=preamble_confidence,
            bbox=None,
            end=marks[0].start if marks else len(text),
        )
        roots.append(preamble)
        ordered.append(preamble)

    stack: list[_Node] = []
    for mark in marks:
        while stack and stack[-1].level >= mark.level:
            stack.pop().end = mark.start

        node = _Node(
            start=mark.start,
            level=mark.level,
            title=mark.title,
            confidence=mark.confidence,
            bbox=mark.bbox,
        )
        if stack:
            node.parent = stack[-1]
            stack[-1].children.append(node)
        else:
            roots.append(node)

        stack.append(node)
        ordered.append(node)

    for node in stack:
        node.end = len(text)

    for order, node in enumerate(roots):
        _materialize(doc_id, text, node, order, page_at)

    return [node.section for node in ordered if node.section is not None]


def _materialize(
    doc_id: UUID,
    text: str,
    node: _Node,
    order: int,
    page_at: Callable[[int], int | None] | None,
) -> None:
    own_end = node.children[0].start if node.children else node.end
    node.section = DocumentSection(
        doc_id=doc_id,
        parent_section_id=node.parent.section.section_id if node.parent and node.parent.section else None,
        level=node.level,
        section_order=order,
        title=node.title,
        content=text[node.start : own_end],
        start_char=node.start,
        end_char=node.end,
        start_page=page_at(node.start) if page_at else None,
        end_page=page_at(max(node.end - 1, node.start)) if page_at else None,
        coordinates=node.bbox,
        confidence=max(0.0, min(1.0, node.confidence)),
    )

    for child_order, child in enumerate(node.children):
        _materialize(doc_id, text, child, child_order, page_at)


def validate_section_tree(sections: Sequence[DocumentSection], text_length: int) -> None:
    """Check offsets, nesting and acyclicity of a section tree.

    Raises:
        ValueError: Describing the first violation found
    """
    by_id = {section.section_id: section for section in sections}
    if len(by_id) != len(sections):
        raise ValueError("duplicate section ids")

    children: dict[UUID | None, list[DocumentSection]] = {}
    for section in sections:
        if not 0 <= section.start_char <= section.end_char <= text_length:
            raise ValueError(
                f"section {section.section_id} range "
                f"[{section.start_char}, {section.end_char}) outside text"
            )

        parent_id = section.parent_section_id
        if parent_id is not None:
            parent = by_id.get(parent_id)
            if parent is None:
                raise ValueError(f"section {section.section_id} has unknown parent")
            if not parent.start_char <= section.start_char <= section.end_char <= parent.end_char:
                raise ValueError(f"section {section.section_id} lies outside its parent")
            if section.level <= parent.level:
                raise ValueError(f"section {section.section_id} is not deeper than its parent")

        children.setdefault(parent_id, []).append(section)

    for section in sections:
        seen = {section.section_id}
        current = section
        while current.parent_section_id is not None:
            if current.parent_section_id in seen:
                raise ValueError(f"cycle through section {section.section_id}")
            seen.add(current.parent_section_id)
            current = by_id[current.parent_section_id]

    for parent_id, siblings in children.items():
        siblings = sorted(siblings, key=lambda s: s.start_char)

        if parent_id is None:
            cursor, limit = 0, text_length
        else:
            parent = by_id[parent_id]
            cursor, limit = siblings[0].start_char, parent.end_char

        for sibling in siblings:
            if sibling.start_char < cursor:
                raise ValueError(f"section {sibling.section_id} overlaps its previous sibling")
            if sibling.start_char > cursor:
                raise ValueError(f"gap before section {sibling.section_id}")
            cursor = sibling.end_char

        if cursor != limit:
            raise ValueError(f"sections under {parent_id} do not reach offset {limit}")


_SCRIPT_RANGES: list[tuple[str, list[tuple[int, int]]]] = [
    ("ja", [(0x3040, 0x30FF)]),
    ("ko", [(0xAC00, 0xD7AF), (0x1100, 0x11FF)]),
    ("zh", [(0x4E00, 0x9FFF)]),
    ("ru", [(0x0400, 0x04FF)]),
    ("ar", [(0x0600, 0x06FF)]),
]


def detect_language(text: str, sample_size: int = 5000) -> str | None:
    """Guess the dominant language from the script of the first characters.

    Returns ``en`` for Latin text and None when there are no letters.
    """
    sample = text[:sample_size]
    letters = [ch for ch in sample if ch.isalpha()]
    if not letters:
        return None

    counts = {lang: 0 for lang, _ in _SCRIPT_RANGES}
    for ch in letters:
        code = ord(ch)
        for lang, ranges in _SCRIPT_RANGES:
            if any(low <= code <= high for low, high in ranges):
                counts[lang] += 1
                break

    # Kana marks Japanese even when kanji dominate
    if counts["ja"] and counts["ja"] + counts["zh"] >= len(letters) * 0.3:
        return "ja"

    lang, count = max(counts.items(), key=lambda item: item[1])
    if count >= len(letters) * 0.3:
        return lang
    return "en"
