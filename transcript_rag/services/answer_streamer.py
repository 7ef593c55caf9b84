"""
Answer streaming: forward generated fragments as they arrive and account tokens afterwards.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

from ..models.core import TokenUsage
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.token_counter import TokenCounter
from .errors import ProviderFailureError

logger = get_logger(__name__)


@dataclass
class StreamAccumulator:
    """Fragments collected by one stream, in generation order."""
    fragments: List[str] = field(default_factory=list)

    def add(self, fragment: str) -> None:
        self.fragments.append(fragment)

    @property
    def text(self) -> str:
        return ''.join(self.fragments)


class AnswerStream:
    """A single-use iterator over answer fragments.

    After iteration ends, `text` holds the accumulated answer, `usage` the token accounting and
    `error` the provider failure that cut the stream short, if any. Usage is the provider-reported
    count when the stream completed with its metadata event, and a local tokenizer estimate otherwise.
    """

    def __init__(self, llm: BedrockLLM, token_counter: TokenCounter, prompt_turns: Sequence[Dict[str, str]]):
        self._llm = llm
        self._token_counter = token_counter
        self.prompt_turns = list(prompt_turns)
        self.accumulator = StreamAccumulator()
        self.usage: Optional[TokenUsage] = None
        self.provider_usage: Optional[TokenUsage] = None
        self.error: Optional[ProviderFailureError] = None
        self.finished = False
        self._started = False

    @property
    def text(self) -> str:
        return self.accumulator.text

    def __iter__(self) -> Iterator[str]:
        if self._started:
            raise RuntimeError('AnswerStream can only be iterated once')
        self._started = True
        return self._generate()

    def _generate(self) -> Iterator[str]:
        try:
            for fragment in self._llm.stream_response(self.prompt_turns, on_usage=self._record_usage):
                if not fragment:
                    continue
                self.accumulator.add(fragment)
                yield fragment
        except BedrockLLMError as e:
            if not self.accumulator.fragments:
                raise ProviderFailureError('generative text provider', e)
            # Fragments already delivered stand; the partial answer is still usable
            logger.warning(f'Answer stream failed after {len(self.accumulator.fragments)} fragment(s): {e}')
            self.error = ProviderFailureError('generative text provider', e)
        finally:
            self._finish()

    def _record_usage(self, usage: TokenUsage) -> None:
        self.provider_usage = usage

    def _finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        if self.provider_usage is not None and self.error is None:
            self.usage = self.provider_usage
            logger.debug(f'Answer stream finished: {len(self.text)} chars, {self.usage.total_tokens} tokens (provider)')
            return
        try:
            self.usage = self._token_counter.usage_for(self.prompt_turns, self.text)
        except Exception as e:
            logger.error(f'Token accounting failed: {e}')
            self.usage = TokenUsage()
        logger.debug(f'Answer stream finished: {len(self.text)} chars, {self.usage.total_tokens} tokens')


class AnswerStreamer:
    """Drive the generative-text provider in streaming mode."""

    def __init__(self, llm: Optional[BedrockLLM] = None, token_counter: Optional[TokenCounter] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.token_counter = token_counter or TokenCounter(config.tokenizer)

    def stream(self, prompt_turns: Sequence[Dict[str, str]]) -> AnswerStream:
        return AnswerStream(self.llm, self.token_counter, prompt_turns)
