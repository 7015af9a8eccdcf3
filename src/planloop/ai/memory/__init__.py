"""Conversation memory helpers."""

from .buffers import HistoryWindow, TurnExchange, truncate_text

__all__ = ["HistoryWindow", "TurnExchange", "truncate_text"]
