"""Token budget and request rate limiting for an LLM chat service."""

__version__ = "0.1.0"
