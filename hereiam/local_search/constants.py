from __future__ import annotations


GRANULARITY_PARAGRAPH = "paragraph"
GRANULARITY_PAGE = "page"
GRANULARITY_DOCUMENT = "document"

# Order matters: chunks of one file are emitted paragraph -> page -> document.
GRANULARITIES = (GRANULARITY_PARAGRAPH, GRANULARITY_PAGE, GRANULARITY_DOCUMENT)
DEFAULT_GRANULARITIES = frozenset({GRANULARITY_PARAGRAPH})

SUPPORTED_TEXT_EXTS = (".txt", ".md", ".js", ".html", ".css", ".json")
SUPPORTED_DOC_EXTS = (".pdf", ".docx")

DEFAULT_EXTENSIONS = SUPPORTED_TEXT_EXTS + SUPPORTED_DOC_EXTS
