"""Cross-cutting utilities for the generation pipeline.

Modules:
    logging: JSON structured logger with context binding.
    tokens: Fernet-signed principal tokens for the event stream and API.
"""

from framebrew.utils.logging import StructuredLogger, get_logger
from framebrew.utils.tokens import Principal, StreamTokenService

__all__ = [
    "Principal",
    "StreamTokenService",
    "StructuredLogger",
    "get_logger",
]
