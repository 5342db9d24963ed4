"""
Unit Tests — DocumentChunker
════════════════════════════
Line classification, heading context, determinism and format handling.

Coverage targets:
  ✅ Heading / paragraph / list item classification
  ✅ Heading levels by length band
  ✅ preceding_heading carried forward
  ✅ Positions strictly increasing from 0
  ✅ Same bytes → same chunks
  ✅ DOCX body walk keeps tables in place (table_cell chunks)
  ✅ Unsupported extension → UnsupportedFormatError (not retryable)
  ✅ Blank document → ParseError
  ✅ Deterministic chunk ids and vector metadata projection
"""

from __future__ import annotations

import io

import pytest

from docpipeline.core.errors import ParseError, UnsupportedFormatError
from docpipeline.processing.chunking import (
    ChunkKind,
    DocumentChunker,
    ListType,
    classify_list_item,
    heading_level,
    is_heading,
    make_chunk_id,
)


@pytest.fixture
def chunker() -> DocumentChunker:
    return DocumentChunker()


# ─────────────────────────────────────────────────────────────────────────────
# Line rules
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLineRules:

    @pytest.mark.parametrize("line", ["- item", "* item", "• item", "   - indented item"])
    def test_bullets(self, line):
        assert classify_list_item(line) is ListType.BULLET

    @pytest.mark.parametrize("line", ["1. first", "2) second", "a. lettered", "  10. tenth"])
    def test_numbered(self, line):
        assert classify_list_item(line) is ListType.NUMBERED

    @pytest.mark.parametrize("line", ["-no space", "1.5 million users", "Plain sentence."])
    def test_not_list_items(self, line):
        assert classify_list_item(line) is None

    @pytest.mark.parametrize("line", [
        "Scope:",
        "PROJECT SCOPE",
        "Project Scope",
        "A. Background",
    ])
    def test_heading_patterns(self, line):
        assert is_heading(line)

    def test_short_line_followed_by_long_line_is_heading(self):
        assert is_heading("the plan", "x" * 40)

    def test_short_line_followed_by_short_line_is_not_heading(self):
        assert not is_heading("the plan", "and more")

    def test_long_line_is_never_heading(self):
        assert not is_heading("THIS IS A VERY LONG ALL CAPS LINE THAT GOES ON AND ON")

    def test_heading_levels(self):
        assert heading_level("Short") == 1
        assert heading_level("x" * 25) == 2
        assert heading_level("x" * 40) == 3


# ─────────────────────────────────────────────────────────────────────────────
# parse()
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestParse:

    def test_heading_and_two_paragraphs(self, chunker, sample_txt_bytes):
        chunks = chunker.parse(sample_txt_bytes, "brief.txt", document_id="doc-1")

        assert [c.kind for c in chunks] == [ChunkKind.HEADING, ChunkKind.PARAGRAPH, ChunkKind.PARAGRAPH]
        assert chunks[0].content == "Project Overview"
        assert chunks[0].level == 1
        assert chunks[0].preceding_heading is None
        assert all(c.preceding_heading == "Project Overview" for c in chunks[1:])
        assert all(c.source_document_id == "doc-1" for c in chunks)

    def test_positions_strictly_increasing(self, chunker):
        text = b"Intro:\nsome text here that is long enough\n- a\n- b\n1. c\nClosing paragraph text."
        chunks = chunker.parse(text, "notes.md", document_id="d")
        assert [c.position for c in chunks] == list(range(len(chunks)))

    def test_list_items_keep_heading_context(self, chunker):
        text = b"Deliverables:\n- Portal\n- Billing export\n"
        chunks = chunker.parse(text, "list.txt", document_id="d")
        assert chunks[1].kind is ChunkKind.LIST_ITEM
        assert chunks[1].list_type is ListType.BULLET
        assert chunks[2].preceding_heading == "Deliverables:"

    def test_deterministic(self, chunker, sample_txt_bytes):
        first = chunker.parse(sample_txt_bytes, "a.txt", document_id="d")
        second = chunker.parse(sample_txt_bytes, "a.txt", document_id="d")
        assert first == second

    def test_blank_lines_and_whitespace_dropped(self, chunker):
        chunks = chunker.parse(b"\n\n   \nOnly line of real content here.\n\n", "a.txt", document_id="d")
        assert len(chunks) == 1
        assert chunks[0].content == "Only line of real content here."

    def test_single_word_input_produces_a_chunk(self, chunker):
        assert len(chunker.parse(b"hello", "a.txt")) == 1

    def test_empty_document_raises_parse_error(self, chunker):
        with pytest.raises(ParseError):
            chunker.parse(b"   \n\n", "empty.txt")

    def test_unsupported_extension(self, chunker):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            chunker.parse(b"data", "sheet.xlsx")
        assert exc_info.value.retryable is False
        assert exc_info.value.error_code == "UNSUPPORTED_FORMAT"

    def test_latin1_fallback(self, chunker):
        chunks = chunker.parse("Café budget approved".encode("latin-1"), "a.txt")
        assert chunks[0].content == "Café budget approved"

    def test_docx_tables_stay_in_place(self, chunker):
        docx = pytest.importorskip("docx")
        document = docx.Document()
        document.add_paragraph("Budget:")
        table = document.add_table(rows=1, cols=2)
        table.cell(0, 0).text = "Engineering"
        table.cell(0, 1).text = "300000"
        document.add_paragraph("Totals are estimates and subject to change at phase gates.")
        buf = io.BytesIO()
        document.save(buf)

        chunks = chunker.parse(buf.getvalue(), "plan.docx", document_id="d")

        kinds = [c.kind for c in chunks]
        assert kinds == [ChunkKind.HEADING, ChunkKind.TABLE_CELL, ChunkKind.TABLE_CELL, ChunkKind.PARAGRAPH]
        assert chunks[1].content == "Engineering"
        assert chunks[1].preceding_heading == "Budget:"

    def test_corrupt_docx_raises_parse_error(self, chunker):
        with pytest.raises(ParseError):
            chunker.parse(b"PK\x03\x04not really a zip", "broken.docx")


# ─────────────────────────────────────────────────────────────────────────────
# Ids and metadata
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunkIdentity:

    def test_chunk_id_is_document_plus_index(self):
        assert make_chunk_id("doc-1", 3) == "doc-1_chunk_3"

    def test_metadata_drops_none_values(self, chunker):
        chunks = chunker.parse(b"Scope:\nA paragraph of text that belongs to the scope section.", "a.txt", "doc")
        heading_meta = chunks[0].metadata()
        para_meta = chunks[1].metadata()

        assert heading_meta["kind"] == "heading"
        assert heading_meta["section_level"] == 1
        assert "preceding_heading" not in heading_meta
        assert para_meta["preceding_heading"] == "Scope:"
        assert "section_level" not in para_meta
        assert para_meta["chunk_index"] == 1
