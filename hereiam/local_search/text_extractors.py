from __future__ import annotations

from pathlib import Path

import structlog

from ..errors import ExtractionError

log = structlog.get_logger()


class TextExtractor:
    """Reads a file into plain text.

    PDF goes through PyMuPDF with a pypdf fallback, DOCX through python-docx,
    anything else is decoded as UTF-8. Failures raise ExtractionError so the
    indexer can skip the file and keep going.
    """

    def extract(self, file_path: str | Path) -> str:
        p = Path(file_path)
        ext = p.suffix.lower()

        if ext == ".docx":
            return self._extract_docx(p)

        if ext == ".pdf":
            return self._extract_pdf(p)

        try:
            return p.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ExtractionError(f"Not a UTF-8 text file: {p}", str(p), {"reason": str(e)}) from e
        except OSError as e:
            raise ExtractionError(f"Cannot read {p}: {e.strerror or e}", str(p)) from e

    def _extract_docx(self, path: Path) -> str:
        import docx  # python-docx

        try:
            document = docx.Document(str(path))
        except Exception as e:
            raise ExtractionError(f"Cannot open DOCX {path}: {e}", str(path)) from e
        parts = [p.text for p in document.paragraphs if p.text]
        # keep paragraphs apart so the chunker sees blank-line boundaries
        return "\n\n".join(parts)

    def _extract_pdf(self, path: Path) -> str:
        try:
            import fitz  # PyMuPDF

            with fitz.open(str(path)) as doc:
                parts = [page.get_text("text") for page in doc]
            return "\n\n".join(parts)
        except Exception as e:
            log.debug("pdf_pymupdf_failed", path=str(path), error=str(e))

        try:
            from pypdf import PdfReader

            reader = PdfReader(str(path))
            parts = [page.extract_text() or "" for page in reader.pages]
            return "\n\n".join(parts)
        except Exception as e:
            raise ExtractionError(f"Cannot extract text from PDF {path}: {e}", str(path)) from e
