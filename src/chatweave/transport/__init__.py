"""Network transports for chat streams and background jobs."""

from .client import ChatStreamClient, ClientSettings
from .jobs import BackgroundJobClient

__all__ = ["BackgroundJobClient", "ChatStreamClient", "ClientSettings"]
