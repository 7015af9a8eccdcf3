"""Model client, prompts, history window and orchestration loop."""

from .client import AIClient, ApproxByteCounter, ClientSettings, classify_backend_error

__all__ = ["AIClient", "ClientSettings", "ApproxByteCounter", "classify_backend_error"]
