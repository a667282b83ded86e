"""Tests for reply text chunking and table conversion."""

import random

import pytest

from wecomos.text import chunk_text, chunk_text_with_mode, convert_markdown_tables


def _words(seed: int, count: int) -> str:
    rng = random.Random(seed)
    words = []
    for _ in range(count):
        word = "".join(rng.choice("abcdefghij") for _ in range(rng.randint(1, 12)))
        words.append(word + ("\n" if rng.random() < 0.1 else " "))
    return "".join(words).strip()


class TestChunkText:
    def test_short_text_is_single_chunk(self):
        assert chunk_text("hello", 2048) == ["hello"]

    def test_empty_text(self):
        assert chunk_text("", 10) == []

    def test_prefers_space_break(self):
        assert chunk_text("aaa bbb ccc", 7) == ["aaa", "bbb ccc"]

    def test_prefers_newline_over_space(self):
        assert chunk_text("aa bb\ncc dd ee", 10) == ["aa bb", "cc dd ee"]

    def test_hard_break_without_separator(self):
        assert chunk_text("a" * 25, 10) == ["a" * 10, "a" * 10, "a" * 5]

    def test_long_text_at_wecom_limit(self):
        text = _words(1, 1200)
        assert len(text) > 5000

        chunks = chunk_text(text, 2048)

        assert len(chunks) >= 3
        assert all(0 < len(c) <= 2048 for c in chunks)
        assert " ".join(" ".join(c.split()) for c in chunks) == " ".join(text.split())

    @pytest.mark.parametrize("seed", range(5))
    def test_chunks_never_exceed_limit(self, seed):
        text = _words(seed, 300)
        for limit in (16, 50, 333):
            chunks = chunk_text(text, limit)
            assert all(0 < len(c) <= limit for c in chunks)
            assert "".join("".join(c.split()) for c in chunks) == "".join(text.split())

    def test_non_positive_limit_returns_text(self):
        assert chunk_text("abc def", 0) == ["abc def"]


class TestChunkModes:
    def test_length_mode_matches_chunk_text(self):
        text = _words(3, 200)
        assert chunk_text_with_mode(text, 100, "length") == chunk_text(text, 100)

    def test_newline_mode_packs_lines(self):
        text = "line one\nline two\nline three\nline four"
        assert chunk_text_with_mode(text, 20, "newline") == [
            "line one\nline two",
            "line three\nline four",
        ]

    def test_newline_mode_splits_long_lines(self):
        text = "short\n" + "x" * 25
        chunks = chunk_text_with_mode(text, 10, "newline")
        assert chunks[0] == "short"
        assert all(len(c) <= 10 for c in chunks)
        assert "".join(chunks[1:]) == "x" * 25

    def test_newline_mode_short_text(self):
        assert chunk_text_with_mode("a\nb", 10, "newline") == ["a\nb"]
        assert chunk_text_with_mode("", 10, "newline") == []


TABLE = "Results:\n| Name | Score |\n| --- | ---: |\n| bob | 10 |\n| alice | 7 |\nDone."


class TestConvertTables:
    def test_off_leaves_text(self):
        assert convert_markdown_tables(TABLE, "off") == TABLE

    def test_code_mode(self):
        assert convert_markdown_tables(TABLE, "code") == "\n".join([
            "Results:",
            "```",
            "Name  | Score",
            "------+------",
            "bob   | 10",
            "alice | 7",
            "```",
            "Done.",
        ])

    def test_bullets_mode(self):
        assert convert_markdown_tables(TABLE, "bullets") == "\n".join([
            "Results:",
            "- Name: bob; Score: 10",
            "- Name: alice; Score: 7",
            "Done.",
        ])

    def test_pipe_without_separator_is_not_a_table(self):
        text = "a | b\nnot a table"
        assert convert_markdown_tables(text, "code") == text
