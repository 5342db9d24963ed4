"""
Text Extraction
═══════════════

Turns raw document bytes into a list of logical text blocks, keyed by
file extension:

  .txt / .md  →  UTF-8 decode (latin-1 fallback), one block per line
  .docx       →  python-docx paragraphs in body order, table cells as
                 separate "table_cell" blocks
  .pdf        →  pypdf page text, one block per line

Any other extension raises UnsupportedFormatError. Bytes that the selected
library cannot read raise ParseError; the chunker never sees a partial
document.

Workers and the chunker only see ExtractionResult.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field

from docpipeline.core.errors import ParseError, UnsupportedFormatError

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = frozenset({".txt", ".md"})
DOCX_EXTENSIONS = frozenset({".docx"})
PDF_EXTENSIONS  = frozenset({".pdf"})

SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | DOCX_EXTENSIONS | PDF_EXTENSIONS


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class TextBlock:
    """One unit of extracted text. `is_table_cell` blocks bypass line classification."""
    text:          str
    is_table_cell: bool = False


@dataclass
class ExtractionResult:
    """
    blocks      : extracted blocks in document order
    format      : "text" | "docx" | "pdf"
    page_count  : PDF page count (1 for other formats)
    elapsed_ms  : extraction wall time
    """
    blocks:     list[TextBlock] = field(default_factory=list)
    format:     str   = "text"
    page_count: int   = 1
    elapsed_ms: float = 0.0

    @property
    def full_text(self) -> str:
        return "\n".join(b.text for b in self.blocks)

    @property
    def total_chars(self) -> int:
        return sum(len(b.text) for b in self.blocks)


def get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    parts = base.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def extract_text(data: bytes, filename: str) -> ExtractionResult:
    ext = get_extension(filename)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(filename)

    t0 = time.monotonic()
    try:
        if ext in PDF_EXTENSIONS:
            result = _extract_pdf(data)
        elif ext in DOCX_EXTENSIONS:
            result = _extract_docx(data)
        else:
            result = _extract_plain(data)
    except ParseError:
        raise
    except Exception as exc:
        logger.warning("Text extraction failed | file=%s error=%s", filename, exc)
        raise ParseError(f"Could not read '{filename}': {exc}") from exc

    result.elapsed_ms = (time.monotonic() - t0) * 1000
    logger.info(
        "Extraction | file=%s format=%s blocks=%d chars=%d elapsed_ms=%.0f",
        filename, result.format, len(result.blocks), result.total_chars, result.elapsed_ms,
    )
    return result


def _extract_plain(data: bytes) -> ExtractionResult:
    """Plain text / markdown — decode with UTF-8, fallback to latin-1."""
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1", errors="replace")
    return ExtractionResult(
        blocks=[TextBlock(line) for line in text.splitlines()],
        format="text",
    )


def _extract_pdf(data: bytes) -> ExtractionResult:
    """Extract text from PDF bytes using pypdf."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    blocks: list[TextBlock] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        blocks.extend(TextBlock(line) for line in page_text.splitlines())
    return ExtractionResult(blocks=blocks, format="pdf", page_count=len(reader.pages))


def _extract_docx(data: bytes) -> ExtractionResult:
    """
    Extract paragraphs and table cells from DOCX bytes using python-docx.
    Walks the body XML so tables stay in their position between paragraphs.
    """
    import docx
    from docx.table import Table
    from docx.text.paragraph import Paragraph

    document = docx.Document(io.BytesIO(data))
    body = document.element.body
    blocks: list[TextBlock] = []

    for child in body.iterchildren():
        tag = child.tag.rsplit("}", 1)[-1]
        if tag == "p":
            blocks.extend(TextBlock(line) for line in Paragraph(child, document).text.splitlines())
        elif tag == "tbl":
            table = Table(child, document)
            for row in table.rows:
                seen: list = []
                for cell in row.cells:
                    # merged cells are returned once per grid column
                    if any(cell._tc is tc for tc in seen):
                        continue
                    seen.append(cell._tc)
                    cell_text = cell.text.strip()
                    if cell_text:
                        blocks.append(TextBlock(cell_text, is_table_cell=True))

    return ExtractionResult(blocks=blocks, format="docx")
