# =============================================================================
# Unit Tests — Chunker Service
# =============================================================================
#
# Tests the structure-aware token chunker without external dependencies.
# No API keys, databases, or network calls needed.
# =============================================================================

from plugin_engine.services.chunker import chunk_text, count_tokens


def _paragraph_document(target_chars: int = 2000) -> str:
    """Plain text with clear paragraph breaks, about `target_chars` long."""
    topics = ["beam design", "column bracing", "slab cover", "wind loads", "fire rating"]
    paragraphs = []
    i = 0
    while sum(len(p) + 2 for p in paragraphs) < target_chars:
        topic = topics[i % len(topics)]
        paragraphs.append(
            f"Paragraph {i} covers {topic}. The engineer checks the governing case "
            f"and records the result for {topic} in the calculation package."
        )
        i += 1
    return "\n\n".join(paragraphs)


class TestChunkText:
    """Tests for chunk_text()."""

    def test_empty_text_returns_no_chunks(self):
        assert chunk_text("") == []

    def test_whitespace_only_returns_no_chunks(self):
        assert chunk_text("   \n\n\t \n") == []

    def test_single_short_paragraph_produces_one_chunk(self):
        chunks = chunk_text("This is a short sentence.", chunk_size=64, chunk_overlap=10)
        assert len(chunks) == 1
        assert chunks[0].content == "This is a short sentence."
        assert chunks[0].chunk_index == 0
        assert chunks[0].page_number is None

    def test_chunk_indices_are_sequential(self):
        chunks = chunk_text("word " * 400, chunk_size=32, chunk_overlap=5)
        assert len(chunks) > 1
        for i, chunk in enumerate(chunks):
            assert chunk.chunk_index == i

    def test_token_count_respects_chunk_size(self):
        text = "Revenue grew by 15% year over year. " * 100
        chunks = chunk_text(text, chunk_size=64, chunk_overlap=10)
        for chunk in chunks:
            assert chunk.token_count <= 64
            assert chunk.token_count == count_tokens(chunk.content)

    def test_never_cuts_inside_a_word(self):
        text = _paragraph_document()
        words = set(text.split())
        chunks = chunk_text(text, chunk_size=40, chunk_overlap=8)
        assert len(chunks) > 1
        for chunk in chunks:
            assert set(chunk.content.split()) <= words

    def test_2000_char_document_is_deterministic(self):
        text = _paragraph_document(2000)
        assert len(text) >= 2000

        first = chunk_text(text, chunk_size=64, chunk_overlap=12)
        second = chunk_text(text, chunk_size=64, chunk_overlap=12)

        assert len(first) > 1
        assert [(c.chunk_index, c.content) for c in first] == [
            (c.chunk_index, c.content) for c in second
        ]

    def test_overlap_seeds_next_chunk_with_previous_tail(self):
        text = " ".join(f"Sentence number {i} describes the load path." for i in range(40))
        chunks = chunk_text(text, chunk_size=40, chunk_overlap=10)
        assert len(chunks) > 1

        # The tail may span a paragraph join, so compare word sequences
        head = chunks[1].content.split("\n\n")[0]
        assert " ".join(chunks[0].content.split()).endswith(head)
        assert count_tokens(head) <= 10

    def test_zero_overlap_starts_fresh(self):
        text = " ".join(f"Sentence number {i} describes the load path." for i in range(40))
        chunks = chunk_text(text, chunk_size=40, chunk_overlap=0)
        for chunk in chunks[1:]:
            assert chunk.content.startswith("Sentence number")

    def test_page_markers_set_page_and_are_dropped(self):
        text = "--- Page 1 ---\nIntro text here.\n--- Page 2 ---\nSecond page text."
        chunks = chunk_text(text, chunk_size=256, chunk_overlap=0)
        assert len(chunks) == 1
        assert chunks[0].page_number == 1
        assert chunks[0].metadata["source_pages"] == [1, 2]
        assert "Page 2" not in chunks[0].content

    def test_form_feed_advances_page(self):
        chunks = chunk_text("First page.\fSecond page.", chunk_size=256, chunk_overlap=0)
        assert chunks[0].page_number == 1
        assert chunks[0].metadata["source_pages"] == [1, 2]

    def test_markdown_headers_start_sections(self):
        text = (
            "# Scope\n\nThis standard covers reinforced concrete beams.\n\n"
            "# Loads\n\nDead and live loads are combined per the load table."
        )
        chunks = chunk_text(
            text, file_name="standard.md", chunk_size=256, chunk_overlap=0, min_chunk_size=1,
        )
        assert len(chunks) == 2
        assert chunks[0].section_title == "Scope"
        assert chunks[1].section_title == "Loads"
        assert chunks[1].content.startswith("# Loads")

    def test_markdown_files_ignore_all_caps_lines_as_headers(self):
        text = "# Scope\n\nNOTE WELL\nThe cover applies."
        chunks = chunk_text(text, file_type="md", chunk_size=256, chunk_overlap=0)
        assert all(c.section_title == "Scope" for c in chunks)

    def test_metadata_carries_hints(self):
        chunks = chunk_text("Some text.", file_name="notes.txt", file_type="txt")
        assert chunks[0].metadata["file_name"] == "notes.txt"
        assert chunks[0].metadata["file_type"] == "txt"
        assert chunks[0].metadata["char_count"] == len("Some text.")
