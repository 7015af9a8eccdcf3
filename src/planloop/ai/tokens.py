"""Approximate token accounting used for context-size logging."""

from __future__ import annotations

import math

__all__ = ["ApproxByteCounter", "estimate_tokens"]

_DEFAULT_BYTES_PER_TOKEN = 4


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


_DEFAULT_COUNTER = ApproxByteCounter()


def estimate_tokens(text: str) -> int:
    """Approximate token count for ``text`` (about four bytes per token)."""

    return _DEFAULT_COUNTER.estimate(text)
