"""Default parser registry wiring."""

from backend.ingest.config import Settings
from backend.ingest.docs.markdown_parser import (
    MARKDOWN_MIME_TYPES,
    PLAIN_TEXT_MIME_TYPES,
    MarkdownParser,
)
from backend.ingest.docs.parser import ParserRegistry
from backend.ingest.docs.pdf_parser import PDF_MIME_TYPES, PdfParser


def create_parser_registry(settings: Settings | None = None) -> ParserRegistry:
    """Register the PDF and Markdown variants for their mime types."""
    pdf_parser = (
        PdfParser(
            heading_ratio=settings.pdf_heading_ratio,
            min_heading_confidence=settings.pdf_min_heading_confidence,
        )
        if settings is not None
        else PdfParser()
    )
    markdown_parser = MarkdownParser()

    registry = ParserRegistry()
    registry.register(PDF_MIME_TYPES, pdf_parser)
    registry.register(MARKDOWN_MIME_TYPES, markdown_parser)
    registry.register(PLAIN_TEXT_MIME_TYPES, markdown_parser)
    return registry
