"""Utility helpers for logging and file IO."""

from .file_io import compute_text_digest, decode_text, read_text, write_text
from .logging import SessionLogAdapter, get_log_path, session_logger, setup_logging

__all__ = [
    "compute_text_digest",
    "decode_text",
    "read_text",
    "write_text",
    "SessionLogAdapter",
    "get_log_path",
    "session_logger",
    "setup_logging",
]
