"""
Unit Tests for the Chunker

Tests splitting policy, bounds, overlap and lossless reconstruction.

PATTERNS:
---------
1. Pure functions, no fixtures beyond sample text
2. Exact spans for small hand-checked inputs
3. Property-style checks over realistic documents
"""

import pytest

from benefits_rag.chunking import (
    ChunkingConfig,
    TextChunk,
    chunk_text,
    merge_chunks,
    normalize_text,
    split_text,
)
from benefits_rag.core.errors import InvalidInputError


BENEFITS_TEXT = """Health Plan Overview

Acme Corp offers two medical plans.  The PPO plan has an annual deductible of $500 for individuals
and $1,000 for families. After the deductible, the plan pays 80% of covered services.

The HDHP plan has a deductible of $1,500 and pairs with a Health Savings Account (HSA).
Employer HSA contributions are $750 per year!  Preventive care is covered at 100% on both plans.


Dental coverage includes two cleanings per year. Orthodontia is covered for dependents under 19?
Vision coverage includes one eye exam every twelve months and a frame allowance of $150.
"""


# ---------------------------------------------------------------------------
# NORMALIZATION
# ---------------------------------------------------------------------------


class TestNormalizeText:
    """Test whitespace normalization."""

    def test_crlf_becomes_lf(self):
        assert normalize_text("a\r\nb\rc") == "a\nb\nc"

    def test_horizontal_whitespace_collapsed(self):
        assert normalize_text("a   \t b") == "a b"

    def test_stacked_blank_lines_collapsed(self):
        assert normalize_text("a\n\n\n\nb") == "a\n\nb"

    def test_spaces_around_newlines_removed(self):
        assert normalize_text("  a  \n  b  ") == "a\nb"

    def test_normalization_is_idempotent(self):
        once = normalize_text(BENEFITS_TEXT)
        assert normalize_text(once) == once


# ---------------------------------------------------------------------------
# SPLITTING
# ---------------------------------------------------------------------------


class TestSplitText:
    """Test chunk boundaries."""

    def test_example_document_produces_three_chunks(self):
        """1,199 characters of words at 500/100 give three overlapping chunks."""
        text = ("word " * 240).strip()

        chunks = split_text(text, max_chunk_size=500, overlap_size=100)

        assert [(c.start, c.end) for c in chunks] == [(0, 500), (400, 900), (800, 1199)]
        assert all(len(c.text) <= 500 for c in chunks)

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("Dental coverage starts on day one.", 1000, 200)
        assert chunks == ["Dental coverage starts on day one."]

    def test_empty_text_has_no_chunks(self):
        assert chunk_text("", 1000, 200) == []
        assert chunk_text("   \n\n\t  ", 1000, 200) == []
        assert chunk_text(None, 1000, 200) == []

    def test_prefers_paragraph_break(self):
        text = "A" * 50 + "\n\n" + "B" * 80

        chunks = chunk_text(text, max_chunk_size=100, overlap_size=10)

        assert chunks == ["A" * 50 + "\n\n", "B" * 80]

    def test_prefers_sentence_end_over_whitespace(self):
        text = "Alpha beta gamma. Delta epsilon zeta eta theta iota kappa."

        chunks = chunk_text(text, max_chunk_size=30, overlap_size=5)

        assert chunks[0] == "Alpha beta gamma. "

    def test_hard_cut_without_whitespace(self):
        text = "x" * 250

        chunks = chunk_text(text, max_chunk_size=100, overlap_size=20)

        assert [len(c) for c in chunks] == [100, 100, 50]

    def test_chunks_never_exceed_limit(self):
        for max_size, overlap in [(80, 10), (200, 50), (500, 100), (1000, 200)]:
            chunks = chunk_text(BENEFITS_TEXT, max_size, overlap)
            assert chunks
            assert all(len(c) <= max_size for c in chunks)

    def test_overlap_never_exceeds_overlap_size(self):
        chunks = split_text(BENEFITS_TEXT, max_chunk_size=120, overlap_size=30)

        for previous, current in zip(chunks, chunks[1:]):
            assert current.start > previous.start
            assert 0 <= previous.end - current.start <= 30

    def test_deterministic(self):
        first = split_text(BENEFITS_TEXT, 150, 40)
        second = split_text(BENEFITS_TEXT, 150, 40)
        assert first == second

    def test_spans_are_slices_of_normalized_text(self):
        normalized = normalize_text(BENEFITS_TEXT)
        for chunk in split_text(BENEFITS_TEXT, 150, 40):
            assert normalized[chunk.start:chunk.end] == chunk.text


class TestParameterValidation:
    """Test invalid chunking parameters."""

    def test_overlap_must_be_smaller_than_max(self):
        with pytest.raises(InvalidInputError):
            chunk_text("text", max_chunk_size=100, overlap_size=100)

    def test_negative_overlap_rejected(self):
        with pytest.raises(InvalidInputError):
            chunk_text("text", max_chunk_size=100, overlap_size=-1)

    def test_invalid_input_error_is_value_error(self):
        with pytest.raises(ValueError):
            split_text("text", max_chunk_size=10, overlap_size=20)

    def test_config_validates_on_creation(self):
        with pytest.raises(InvalidInputError):
            ChunkingConfig(max_chunk_size=50, overlap_size=60)

    def test_config_defaults(self):
        config = ChunkingConfig()
        assert config.max_chunk_size == 1000
        assert config.overlap_size == 200

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("RAG_CHUNK_MAX_SIZE", "500")
        monkeypatch.setenv("RAG_CHUNK_OVERLAP", "100")

        config = ChunkingConfig.from_env()

        assert (config.max_chunk_size, config.overlap_size) == (500, 100)


# ---------------------------------------------------------------------------
# RECONSTRUCTION
# ---------------------------------------------------------------------------


class TestMergeChunks:
    """Test lossless reconstruction from spans."""

    @pytest.mark.parametrize("max_size,overlap", [(60, 0), (80, 20), (150, 40), (400, 120)])
    def test_merge_reconstructs_normalized_text(self, max_size, overlap):
        chunks = split_text(BENEFITS_TEXT, max_size, overlap)
        assert merge_chunks(chunks) == normalize_text(BENEFITS_TEXT)

    def test_merge_empty(self):
        assert merge_chunks([]) == ""

    def test_merge_rejects_gaps(self):
        chunks = [TextChunk("abc", 0, 3), TextChunk("ghi", 6, 9)]
        with pytest.raises(InvalidInputError):
            merge_chunks(chunks)
