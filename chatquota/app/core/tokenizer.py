"""Token counting utility using tiktoken.

Token counts feed the usage accountant, which charges them against the
caller's token budget.
"""

from typing import Any, Dict, List, Optional

import tiktoken

from chatquota.app.core.config import settings

# Cache for encodings to avoid repeated creation
_encoding_cache: Dict[str, tiktoken.Encoding] = {}


def get_encoding(model: Optional[str] = None) -> tiktoken.Encoding:
    """Get tiktoken encoding for the specified model.

    Unknown models use the configured default encoding.

    Args:
        model: Model name (optional)

    Returns:
        tiktoken Encoding
    """
    cache_key = model or settings.tokenizer_encoding
    encoding = _encoding_cache.get(cache_key)
    if encoding is not None:
        return encoding

    if model:
        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding(settings.tokenizer_encoding)
    else:
        encoding = tiktoken.get_encoding(settings.tokenizer_encoding)

    _encoding_cache[cache_key] = encoding
    return encoding


def count_tokens(text: str, model: Optional[str] = None) -> int:
    """Count tokens in the given text."""
    if not text:
        return 0
    return len(get_encoding(model).encode(text, disallowed_special=()))


def count_message_tokens(
    messages: List[Dict[str, Any]], model: Optional[str] = None
) -> int:
    """Count tokens in a list of chat messages.

    Args:
        messages: List of message dicts with 'role' and 'content' keys
        model: Model name for encoding selection

    Returns:
        Number of tokens
    """
    if not messages:
        return 0

    encoding = get_encoding(model)

    # Every message follows <|start|>{role/name}\n{content}<|end|>\n
    tokens_per_message = 3
    tokens_per_name = 1

    num_tokens = 0
    for message in messages:
        num_tokens += tokens_per_message
        for key, value in message.items():
            if not isinstance(value, str):
                continue
            num_tokens += len(encoding.encode(value, disallowed_special=()))
            if key == "name":
                num_tokens += tokens_per_name
    num_tokens += 3  # every reply is primed with <|start|>assistant<|message|>

    return num_tokens


class TokenCounter:
    """Incremental token counter for streamed completions.

    Counts each chunk on its own, so token boundaries at chunk edges may be
    off by a token or two compared with counting the full text at once.
    """

    def __init__(self, model: Optional[str] = None):
        self.model = model
        self.encoding = get_encoding(model)
        self._token_count = 0

    def add_text(self, text: str) -> int:
        """Add a chunk and return its token count."""
        if not text:
            return 0
        delta = len(self.encoding.encode_ordinary(text))
        self._token_count += delta
        return delta

    def get_total(self) -> int:
        return self._token_count

    def reset(self) -> None:
        self._token_count = 0


def reset_encoding_cache() -> None:
    """Reset the encoding cache.

    This is primarily useful for testing.
    """
    _encoding_cache.clear()
