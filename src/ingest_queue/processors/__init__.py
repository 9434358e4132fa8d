"""Content processors and AI clients."""

from .ai import AIClient, OpenAIClient, PlaceholderAIClient, create_ai_client
from .base import ContentProcessor
from .media import MediaContentProcessor

__all__ = [
    "AIClient",
    "OpenAIClient",
    "PlaceholderAIClient",
    "create_ai_client",
    "ContentProcessor",
    "MediaContentProcessor",
]
