"""
Document Chunker  —  Line-Level Structural Classification
══════════════════════════════════════════════════════════

Turns raw document bytes into an ordered sequence of typed chunks:

    bytes ──► extractor.extract_text() ──► normalized non-blank lines
          ──► classify each line ──► Chunk(position 0, 1, 2, …)

Classification (first match wins):
  1. table_cell  — DOCX table cells (from the extractor, never reclassified)
  2. list_item   — optional leading whitespace, then a bullet (-, *, •)
                   or a numeric/lettered marker ("1." "2)" "a." "b)")
  3. heading     — shorter than HEADING_MAX_CHARS and any of:
                     • ends with a colon
                     • ALL CAPS phrase
                     • Title Case Phrase
                     • lettered section marker ("A. Scope")
                     • the next line is at least twice as long
                   Level by length band: <20 → 1, <30 → 2, otherwise 3
  4. paragraph   — everything else

Every chunk carries the most recently seen heading as `preceding_heading`
so downstream consumers (vector metadata, prompts) keep section context.

This is a heuristic, not a formal parser. It is deterministic (same bytes →
same chunks) and may misclassify edge cases, but non-empty input always
produces at least one chunk.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum

from docpipeline.core.errors import ParseError
from docpipeline.processing.extractor import TextBlock, extract_text

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

HEADING_MAX_CHARS = 50          # only short lines can be headings
HEADING_LEVEL_BANDS = (20, 30)  # <20 → level 1, <30 → level 2, else 3
NEXT_LINE_RATIO = 2             # next line ≥ 2× as long marks a heading

_BULLET_RE   = re.compile(r"^\s*[-*•]\s")
_NUMBERED_RE = re.compile(r"^\s*(?:\d+|[a-z])[.)]\s")

_HEADING_PATTERNS = (
    re.compile(r"^[A-Z][A-Z\s]+$"),                  # ALL CAPS
    re.compile(r"^[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*$"),  # Title Case
    re.compile(r"^[A-Z]\.\s"),                       # A. Section
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class ChunkKind(str, Enum):
    PARAGRAPH  = "paragraph"
    HEADING    = "heading"
    LIST_ITEM  = "list_item"
    TABLE_CELL = "table_cell"


class ListType(str, Enum):
    BULLET   = "bullet"
    NUMBERED = "numbered"


@dataclass(frozen=True)
class Chunk:
    """
    One classified unit of document text. Immutable once produced.

    Fields map directly to the vector metadata schema (see metadata()).
    """
    content:            str
    kind:               ChunkKind
    source_document_id: str
    position:           int                  # 0-based, strictly increasing
    preceding_heading:  str | None = None
    level:              int | None = None    # headings only (1–3)
    list_type:          ListType | None = None

    @property
    def chunk_id(self) -> str:
        return make_chunk_id(self.source_document_id, self.position)

    @property
    def char_count(self) -> int:
        return len(self.content)

    def metadata(self) -> dict:
        """Vector metadata projection; None values are dropped (Pinecone rejects nulls)."""
        meta = {
            "content":            self.content,
            "kind":               self.kind.value,
            "source_document_id": self.source_document_id,
            "preceding_heading":  self.preceding_heading,
            "section_level":      self.level,
            "list_type":          self.list_type.value if self.list_type else None,
            "chunk_index":        self.position,
        }
        return {k: v for k, v in meta.items() if v is not None}


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class DocumentChunker:
    """
    Stateless document chunker.

    Usage:
        chunker = DocumentChunker()
        chunks  = chunker.parse(data, "brief.docx", document_id=str(analysis_id))
    """

    def parse(self, data: bytes, filename: str, document_id: str = "") -> list[Chunk]:
        """
        Parse `data` into ordered chunks.

        Raises:
            UnsupportedFormatError: extension not supported
            ParseError:             unreadable bytes or no text
        """
        extraction = extract_text(data, filename)
        blocks = _normalize_blocks(extraction.blocks)

        if not blocks:
            raise ParseError(f"Document '{filename}' is empty after text extraction")

        chunks = self.classify(blocks, document_id)

        if not chunks:
            # classify() emits one chunk per block; reaching here is a defect
            raise ParseError(f"No chunks produced from non-empty document '{filename}'")

        logger.info(
            "DocumentChunker | doc=%s file=%s chunks=%d headings=%d list_items=%d",
            document_id, filename, len(chunks),
            sum(1 for c in chunks if c.kind is ChunkKind.HEADING),
            sum(1 for c in chunks if c.kind is ChunkKind.LIST_ITEM),
        )
        return chunks

    def parse_text(self, text: str, document_id: str = "") -> list[Chunk]:
        """Classify already-extracted text (one block per line)."""
        blocks = _normalize_blocks([TextBlock(line) for line in text.splitlines()])
        return self.classify(blocks, document_id)

    def classify(self, blocks: list[TextBlock], document_id: str) -> list[Chunk]:
        chunks: list[Chunk] = []
        current_heading: str | None = None

        for idx, block in enumerate(blocks):
            line = block.text
            next_line = _next_line(blocks, idx)

            if block.is_table_cell:
                chunks.append(Chunk(
                    content=line,
                    kind=ChunkKind.TABLE_CELL,
                    source_document_id=document_id,
                    position=len(chunks),
                    preceding_heading=current_heading,
                ))
                continue

            list_type = classify_list_item(line)
            if list_type is not None:
                chunks.append(Chunk(
                    content=line,
                    kind=ChunkKind.LIST_ITEM,
                    source_document_id=document_id,
                    position=len(chunks),
                    preceding_heading=current_heading,
                    list_type=list_type,
                ))
                continue

            if is_heading(line, next_line):
                chunks.append(Chunk(
                    content=line,
                    kind=ChunkKind.HEADING,
                    source_document_id=document_id,
                    position=len(chunks),
                    preceding_heading=current_heading,
                    level=heading_level(line),
                ))
                current_heading = line
                continue

            chunks.append(Chunk(
                content=line,
                kind=ChunkKind.PARAGRAPH,
                source_document_id=document_id,
                position=len(chunks),
                preceding_heading=current_heading,
            ))

        return chunks


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------

def classify_list_item(line: str) -> ListType | None:
    if _BULLET_RE.match(line):
        return ListType.BULLET
    if _NUMBERED_RE.match(line):
        return ListType.NUMBERED
    return None


def is_heading(line: str, next_line: str | None = None) -> bool:
    if len(line) >= HEADING_MAX_CHARS:
        return False
    if line.endswith(":"):
        return True
    if any(p.match(line) for p in _HEADING_PATTERNS):
        return True
    return next_line is not None and len(next_line) >= NEXT_LINE_RATIO * len(line)


def heading_level(line: str) -> int:
    short, medium = HEADING_LEVEL_BANDS
    if len(line) < short:
        return 1
    if len(line) < medium:
        return 2
    return 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _normalize_line(text: str) -> str:
    """NFC-normalize, replace zero-width / non-breaking spaces, trim."""
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    return text.strip()


def _normalize_blocks(blocks: list[TextBlock]) -> list[TextBlock]:
    out: list[TextBlock] = []
    for block in blocks:
        text = _normalize_line(block.text)
        if text:
            out.append(TextBlock(text, is_table_cell=block.is_table_cell))
    return out


def _next_line(blocks: list[TextBlock], idx: int) -> str | None:
    if idx + 1 < len(blocks) and not blocks[idx + 1].is_table_cell:
        return blocks[idx + 1].text
    return None


def make_chunk_id(document_id: str, chunk_index: int) -> str:
    """
    Deterministic chunk ID: <document_id>_chunk_<index>.
    Re-processing a document upserts the same ids, so vectors are replaced,
    never duplicated.
    """
    return f"{document_id}_chunk_{chunk_index}"
