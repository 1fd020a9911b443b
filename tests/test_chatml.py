"""Tests for ChatML parsing of rendered prompt templates."""

from __future__ import annotations

import pytest

from src.core.chatml import ChatMLError, parse_chatml, to_chatml
from src.services.models import ChatMessage


class TestParseChatML:
    """Well-formed documents and collected errors."""

    def test_parses_blocks_in_order(self):
        text = (
            "# translator prompt\n"
            "<|im_start|>SYSTEM\n"
            "You translate.\n"
            "<|im_end|>\n"
            "\n"
            "<|im_start|>USER\n"
            "Hello\n"
            "world\n"
            "<|im_end|>\n"
        )
        messages = parse_chatml(text)
        assert messages == [
            ChatMessage(role="SYSTEM", content="You translate."),
            ChatMessage(role="USER", content="Hello\nworld"),
        ]

    def test_tag_lines_may_be_indented(self):
        messages = parse_chatml("  <|im_start|>USER  \nHi\n  <|im_end|>  ")
        assert messages == [ChatMessage(role="USER", content="Hi")]

    def test_accepts_crlf_line_endings(self):
        messages = parse_chatml("<|im_start|>USER\r\nHi\r\n<|im_end|>\r\n")
        assert messages[0].content == "Hi"

    def test_empty_block_keeps_empty_content(self):
        messages = parse_chatml("<|im_start|>ASSISTANT\n<|im_end|>")
        assert messages == [ChatMessage(role="ASSISTANT", content="")]

    def test_empty_input(self):
        with pytest.raises(ChatMLError) as excinfo:
            parse_chatml("   \n")
        assert excinfo.value.errors == ["Empty input"]

    def test_invalid_role(self):
        with pytest.raises(ChatMLError) as excinfo:
            parse_chatml("<|im_start|>BOT\nhi\n<|im_end|>")
        assert any("Invalid role" in error for error in excinfo.value.errors)

    def test_text_outside_block(self):
        with pytest.raises(ChatMLError) as excinfo:
            parse_chatml("stray text\n<|im_start|>USER\nhi\n<|im_end|>")
        assert len(excinfo.value.errors) == 1
        assert "line 1" in excinfo.value.errors[0]

    def test_collects_every_error(self):
        text = "<|im_start|>USER\nhi\n<|im_start|>USER\nthere\n<|im_end|>\n<|im_end|>\n"
        with pytest.raises(ChatMLError) as excinfo:
            parse_chatml(text)
        errors = excinfo.value.errors
        assert any("before closing previous block" in error for error in errors)
        assert any("without a matching start" in error for error in errors)

    def test_unclosed_block(self):
        with pytest.raises(ChatMLError) as excinfo:
            parse_chatml("<|im_start|>USER\nhi\n")
        assert any("Unclosed" in error for error in excinfo.value.errors)

    def test_comments_only(self):
        with pytest.raises(ChatMLError) as excinfo:
            parse_chatml("# nothing here\n# at all\n")
        assert excinfo.value.errors == ["No valid ChatML messages found."]

    def test_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_chatml("")


def test_to_chatml_parses_back():
    messages = [ChatMessage(role="SYSTEM", content="Rules"), ChatMessage(role="USER", content="Text\nmore")]
    assert parse_chatml(to_chatml(messages)) == messages
