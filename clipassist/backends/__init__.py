"""Generation backends with streaming responses."""

from .base import BaseBackend
from .gemini_backend import GeminiBackend
from .ollama_backend import OllamaBackend
from .stream_parser import JsonObjectScanner, NdjsonDecoder

__all__ = [
    "BaseBackend",
    "GeminiBackend",
    "JsonObjectScanner",
    "NdjsonDecoder",
    "OllamaBackend",
]
