"""
Amazon Bedrock LLM client wrapper with streaming, retry logic and error handling.
"""

import random
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, TokenUsage
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Converse stream events that carry an in-band failure instead of a raised exception
STREAM_ERROR_EVENTS = ('internalServerException', 'modelStreamErrorException', 'validationException', 'throttlingException',
                       'serviceUnavailableException')


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def to_bedrock_request(turns: Sequence[Dict[str, str]]) -> Tuple[List[Dict[str, str]], List[Dict[str, Any]]]:
    """Split chat turns into a Converse `system` block and an alternating message list.

    Converse requires the conversation to start with a user message and roles to alternate, so
    leading assistant turns are dropped and consecutive turns of one role are merged.

    Args:
        turns: Message dicts with 'role' and 'content' keys

    Returns:
        Tuple of (system, messages) in Bedrock Converse format
    """
    system = []
    messages: List[Dict[str, Any]] = []

    for turn in turns:
        role = turn.get('role')
        content = turn.get('content') or ''
        if role == ROLE_SYSTEM:
            if content.strip():
                system.append({'text': content})
            continue
        if role not in (ROLE_USER, ROLE_ASSISTANT) or not content.strip():
            continue
        if not messages and role == ROLE_ASSISTANT:
            continue
        if messages and messages[-1]['role'] == role:
            messages[-1]['content'][0]['text'] += f'\n\n{content}'
        else:
            messages.append({'role': role, 'content': [{'text': content}]})

    return system, messages


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _open_stream(self, system: List[Dict[str, str]], messages: List[Dict[str, Any]], inf_params: Dict[str, Any]):
        """Start a Converse stream, retrying transient failures before any output exists."""
        if not messages:
            raise BedrockLLMError('No user message to send to the model')

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')
                request = {'modelId': self.model_id, 'messages': messages, 'inferenceConfig': inf_params}
                if system:
                    request['system'] = system
                return self.bedrock_runtime.converse_stream(**request).get('stream') or []

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def _iter_events(self,
                     turns: Sequence[Dict[str, str]],
                     max_tokens: Optional[int],
                     temperature: Optional[float],
                     stop_sequences: Optional[List[str]]) -> Iterator[Tuple[str, Any]]:
        """Yield ('text', delta) and ('usage', TokenUsage) pairs from one Converse stream."""
        system, messages = to_bedrock_request(turns)
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        stream = self._open_stream(system, messages, inf_params)

        try:
            for event in stream:
                for error_key in STREAM_ERROR_EVENTS:
                    if error_key in event:
                        message = event[error_key].get('message', error_key)
                        raise BedrockLLMError(f'Bedrock LLM stream failed: {message}')

                if 'contentBlockDelta' in event:
                    text = event['contentBlockDelta'].get('delta', {}).get('text')
                    if text:
                        yield 'text', text
                elif 'metadata' in event:
                    usage = event['metadata'].get('usage', {})
                    yield 'usage', TokenUsage.of(int(usage.get('inputTokens', 0)), int(usage.get('outputTokens', 0)))

        except BedrockLLMError:
            raise
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock LLM stream interrupted: {e}')
            raise BedrockLLMError(f'Bedrock LLM stream interrupted: {e}')

    def stream_response(self,
                        turns: Sequence[Dict[str, str]],
                        max_tokens: Optional[int] = None,
                        temperature: Optional[float] = None,
                        on_usage: Optional[Callable[[TokenUsage], None]] = None) -> Iterator[str]:
        """
        Stream a response as text fragments in generation order.

        Args:
            turns: Message dicts with 'role' and 'content' keys; system turns become the system prompt
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            on_usage: Called with the provider-reported usage when the trailing metadata event arrives

        Yields:
            Non-empty text fragments

        Raises:
            BedrockLLMError: If the stream cannot be opened or breaks mid-way
        """
        for kind, value in self._iter_events(turns, max_tokens, temperature, None):
            if kind == 'text':
                yield value
            elif on_usage is not None:
                on_usage(value)

    def generate_response(self,
                          turns: Sequence[Dict[str, str]],
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[TokenUsage]]:
        """
        Generate a complete response.

        Args:
            turns: Message dicts with 'role' and 'content' keys; a trailing assistant turn acts as prefill
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, token_usage); usage is None if the stream carried no metadata

        Raises:
            BedrockLLMError: If generation fails
        """
        parts = []
        usage = None
        for kind, value in self._iter_events(turns, max_tokens, temperature, stop_sequences):
            if kind == 'text':
                parts.append(value)
            else:
                usage = value

        msg = ''.join(parts)
        logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
        return msg, usage

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_turns = [{
                'role': ROLE_SYSTEM,
                'content': "You are a helpful assistant. Respond with just 'OK'."
            }, {
                'role': ROLE_USER,
                'content': 'Hi'
            }]
            response, _ = self.generate_response(test_turns, max_tokens=10, temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
