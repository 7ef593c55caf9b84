"""
Local token accounting with tiktoken.

The Converse stream only reports usage in its trailing metadata event, which is lost when the
stream breaks or the caller disconnects, so prompt and completion tokens are counted locally.
"""

from typing import Dict, Iterable

import tiktoken

from ..models.core import TokenUsage
from .config import TokenizerConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Chat formatting overhead per message: one role token plus two boundary tokens
TOKENS_PER_MESSAGE_ROLE = 1
TOKENS_PER_MESSAGE_BOUNDARY = 2
TOKENS_REPLY_PRIMER = 2


class TokenCounter:
    """Count tokens for prompts and completions with a fixed tiktoken encoding."""

    def __init__(self, config: TokenizerConfig):
        self.config = config
        self._encoding = None

    @property
    def encoding(self) -> 'tiktoken.Encoding':
        # Loading an encoding may download BPE ranks, so defer it to first use
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self.config.encoding)
            logger.debug(f'Loaded tokenizer encoding {self.config.encoding}')
        return self._encoding

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_chat_tokens(self, messages: Iterable[Dict[str, str]]) -> int:
        """Count prompt tokens for a list of chat messages including formatting overhead.

        Args:
            messages: Message dicts with 'role' and 'content' keys

        Returns:
            Number of prompt tokens
        """
        total = 0
        for message in messages:
            total += TOKENS_PER_MESSAGE_ROLE
            total += self.count_tokens(message.get('content', ''))
            total += TOKENS_PER_MESSAGE_BOUNDARY
        return total + TOKENS_REPLY_PRIMER

    def usage_for(self, messages: Iterable[Dict[str, str]], completion: str) -> TokenUsage:
        return TokenUsage.of(self.count_chat_tokens(messages), self.count_tokens(completion))
