"""Token estimation with tiktoken (cl100k_base).

Estimates only. The real count is whatever the provider bills. Message
and conversation overheads are applied by the context budgeter.
"""

from __future__ import annotations

import tiktoken

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_get_encoder().encode(text))
