"""Document chunker - deterministic, token-bounded text splitting.

Chunks are contiguous character ranges of the extracted text; in
``chunk_index`` order they reproduce the text exactly.
"""

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

import tiktoken

from backend.ingest.config import Settings
from backend.ingest.docs.parser import validate_section_tree
from backend.ingest.errors import ChunkError
from backend.ingest.models import DocumentChunk, DocumentSection

# Blank line(s): the match end is where the next paragraph begins
_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_END = re.compile(r"[.!?。！？][\"')\]]*\s+")
_WORD = re.compile(r"\s*\S+\s*")


class TokenEstimator(Protocol):
    """Counts tokens in a piece of text."""

    def count(self, text: str) -> int: ...


class CharTokenEstimator:
    """Conservative estimate: one token per four characters."""

    def __init__(self, chars_per_token: int = 4) -> None:
        self._chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)


class TiktokenEstimator:
    """Exact counts from a tiktoken encoding."""

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self._encoding = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


def make_token_estimator(name: str) -> TokenEstimator:
    """Build an estimator by name (``chars`` or ``tiktoken``)."""
    if name == "chars":
        return CharTokenEstimator()
    if name == "tiktoken":
        return TiktokenEstimator()
    raise ValueError(f"Unknown token estimator: {name}")


@dataclass
class ChunkerConfig:
    """Chunking configuration."""

    max_tokens: int = 400
    estimator: str = "chars"

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChunkerConfig":
        return cls(max_tokens=settings.chunk_max_tokens, estimator=settings.token_estimator)


@dataclass
class _Unit:
    start: int
    end: int
    section_id: UUID


class Chunker:
    """Packs section text into token-bounded chunks."""

    def __init__(
        self, config: ChunkerConfig | None = None, estimator: TokenEstimator | None = None
    ) -> None:
        self._config = config or ChunkerConfig()
        self._estimator = estimator or make_token_estimator(self._config.estimator)

    def chunk(
        self, doc_id: UUID, sections: Sequence[DocumentSection], text: str
    ) -> list[DocumentChunk]:
        """Chunk a document's text along its section tree.

        Args:
            doc_id: Owning document
            sections: Section tree produced by the parser
            text: Full extracted text the section offsets refer to

        Returns:
            Chunks with contiguous ``chunk_index`` starting at 0

        Raises:
            ChunkError: Sections overlap, leave gaps, or fall outside the text
        """
        if not text:
            return []
        if not sections:
            raise ChunkError("no sections for non-empty text")

        try:
            validate_section_tree(sections, len(text))
        except ValueError as e:
            raise ChunkError(f"malformed sections: {e}") from e

        units = self._merge_blank_units(text, self._split_units(text, sections))
        return self._pack(doc_id, text, units)

    def _split_units(self, text: str, sections: Sequence[DocumentSection]) -> list[_Unit]:
        """Own span of every section in pre-order, cut into budget-sized units."""
        units: list[_Unit] = []
        for section, own_end in _own_spans(sections):
            for start, end in _paragraphs(text, section.start_char, own_end):
                if self._estimator.count(text[start:end]) <= self._config.max_tokens:
                    units.append(_Unit(start, end, section.section_id))
                    continue
                for piece_start, piece_end in self._split_oversized(text, start, end):
                    units.append(_Unit(piece_start, piece_end, section.section_id))
        return units

    def _split_oversized(self, text: str, start: int, end: int) -> list[tuple[int, int]]:
        pieces: list[tuple[int, int]] = []
        for sentence_start, sentence_end in _sentences(text, start, end):
            if self._estimator.count(text[sentence_start:sentence_end]) <= self._config.max_tokens:
                pieces.append((sentence_start, sentence_end))
                continue
            # Words are never split; an oversized word becomes its own chunk
            pieces.extend(
                (match.start(), match.end())
                for match in _WORD.finditer(text, sentence_start, sentence_end)
            )
        return pieces

    def _merge_blank_units(self, text: str, units: list[_Unit]) -> list[_Unit]:
        """Fold whitespace-only units into a neighbour so no chunk is blank."""
        merged: list[_Unit] = []
        pending_start: int | None = None

        for unit in units:
            if not text[unit.start : unit.end].strip():
                if merged:
                    merged[-1].end = unit.end
                elif pending_start is None:
                    pending_start = unit.start
                continue
            if pending_start is not None:
                unit = _Unit(pending_start, unit.end, unit.section_id)
                pending_start = None
            merged.append(unit)

        if pending_start is not None:
            # Whitespace-only text still yields one chunk covering it
            merged.append(_Unit(pending_start, units[-1].end, units[0].section_id))

        return merged

    def _pack(self, doc_id: UUID, text: str, units: list[_Unit]) -> list[DocumentChunk]:
        chunks: list[DocumentChunk] = []
        current: list[_Unit] = []

        def flush() -> None:
            if not current:
                return
            start, end = current[0].start, current[-1].end
            content = text[start:end]
            chunks.append(
                DocumentChunk(
                    doc_id=doc_id,
                    section_id=current[0].section_id,
                    chunk_index=len(chunks),
                    content=content,
                    start_char=start,
                    end_char=end,
                    token_count=self._estimator.count(content),
                    is_boundary_chunk=any(u.section_id != current[0].section_id for u in current),
                )
            )
            current.clear()

        for unit in units:
            if current:
                combined = text[current[0].start : unit.end]
                if self._estimator.count(combined) > self._config.max_tokens:
                    flush()
            current.append(unit)

        flush()
        return chunks


def _own_spans(sections: Sequence[DocumentSection]) -> list[tuple[DocumentSection, int]]:
    """Pre-order walk by section_order; each section paired with its own end."""
    children: dict[UUID | None, list[DocumentSection]] = {}
    for section in sections:
        children.setdefault(section.parent_section_id, []).append(section)
    for siblings in children.values():
        siblings.sort(key=lambda s: (s.section_order, s.start_char))

    ordered: list[tuple[DocumentSection, int]] = []
    stack = list(reversed(children.get(None, [])))
    while stack:
        section = stack.pop()
        kids = children.get(section.section_id, [])
        ordered.append((section, kids[0].start_char if kids else section.end_char))
        stack.extend(reversed(kids))

    # Pre-order by section_order must follow the text, or spans would interleave
    cursor = 0
    for section, own_end in ordered:
        if section.start_char != cursor:
            raise ChunkError(f"section {section.section_id} out of document order")
        cursor = own_end

    return ordered


def _paragraphs(text: str, start: int, end: int) -> list[tuple[int, int]]:
    """Split [start, end) after each blank-line run."""
    ranges: list[tuple[int, int]] = []
    cursor = start
    for match in _PARAGRAPH_BREAK.finditer(text, start, end):
        if match.end() > cursor:
            ranges.append((cursor, match.end()))
            cursor = match.end()
    if cursor < end:
        ranges.append((cursor, end))
    return ranges


def _sentences(text: str, start: int, end: int) -> list[tuple[int, int]]:
    ranges: list[tuple[int, int]] = []
    cursor = start
    for match in _SENTENCE_END.finditer(text, start, end):
        ranges.append((cursor, match.end()))
        cursor = match.end()
    if cursor < end:
        ranges.append((cursor, end))
    return ranges
