"""Markdown parser - ATX headings map directly to section levels."""

import re
from uuid import UUID

from backend.ingest.docs.parser import HeadingMark, ParseResult, build_section_tree, detect_language
from backend.ingest.errors import ParseError

MARKDOWN_MIME_TYPES = ("text/markdown", "text/x-markdown")
PLAIN_TEXT_MIME_TYPES = ("text/plain",)

_ATX_HEADING = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$")
_FENCE = re.compile(r"^ {0,3}(`{3,}|~{3,})")


def find_headings(text: str) -> list[HeadingMark]:
    """Find ATX headings outside fenced code blocks.

    Args:
        text: Normalized markdown text (``\\n`` line endings)

    Returns:
        Heading marks at the offset of their line start
    """
    headings: list[HeadingMark] = []
    fence: str | None = None
    offset = 0

    for line in text.split("\n"):
        fence_match = _FENCE.match(line)

        if fence is not None:
            # Closing fence uses the same character and at least the same length
            if fence_match and fence_match.group(1)[0] == fence[0] and len(fence_match.group(1)) >= len(fence):
                fence = None
        elif fence_match:
            fence = fence_match.group(1)
        else:
            heading_match = _ATX_HEADING.match(line)
            if heading_match:
                headings.append(
                    HeadingMark(
                        start=offset,
                        level=len(heading_match.group(1)),
                        title=(heading_match.group(2) or "").strip(),
                    )
                )

        offset += len(line) + 1

    return headings


class MarkdownParser:
    """Parses Markdown, and plain text as a single section."""

    def parse(self, doc_id: UUID, content: bytes, mime_type: str) -> ParseResult:
        try:
            decoded = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParseError(f"invalid UTF-8 at byte {e.start}") from e

        text = decoded.replace("\r\n", "\n").replace("\r", "\n")
        if not text.strip():
            raise ParseError("empty document")

        headings = [] if mime_type in PLAIN_TEXT_MIME_TYPES else find_headings(text)
        sections = build_section_tree(doc_id, text, headings)

        return ParseResult(
            sections=sections,
            text=text,
            page_count=None,
            language=detect_language(text),
        )
