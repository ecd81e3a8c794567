"""Whitespace token accounting shared by chunking and prompt budgeting."""

import re

TOKEN_PATTERN = re.compile(r"\S+")


def token_spans(text: str) -> list[tuple[int, int]]:
    """Return the ``(start, end)`` character span of every token in ``text``."""
    return [match.span() for match in TOKEN_PATTERN.finditer(text)]


def count_tokens(text: str) -> int:
    """Count whitespace-delimited tokens in ``text``."""
    return sum(1 for _ in TOKEN_PATTERN.finditer(text))
