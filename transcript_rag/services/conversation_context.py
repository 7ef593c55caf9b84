"""
Conversation context assembly: persisted user turn, bounded history and the generation prompt.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..models.core import CONVERSATION_ROLES, ROLE_SYSTEM, ROLE_USER, ConversationTurn, RetrievedChunk, ScopeSelection
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import format_offset
from .repositories import ChatMessageRepository

logger = get_logger(__name__)

NO_CONTEXT_MARKER = 'No relevant context found.'

_SINGLE_FILE_PROMPT = """You are an AI assistant helping a user discuss details about a specific audio file they have uploaded and processed.
You have access to transcriptions of their audio content. Use the provided context from the audio transcription chunks to answer questions accurately. If the context doesn't contain relevant information, say so.

Focus on:
- Discussing the content, topics, and details mentioned in the audio
- Answering questions about what was said, who spoke, and when
- Providing insights based on the transcriptions
- Being helpful and conversational

If asked about information not in the provided context, politely indicate that you don't have that information in the current audio file."""  # noqa: E501

_MULTI_FILE_PROMPT = """You are an AI assistant helping a user discuss details about {count} audio files they selected.
You have access to transcriptions of their audio content. Use the provided context from the audio transcription chunks to answer questions accurately. If the context doesn't contain relevant information, say so.

Focus on:
- Discussing the content, topics, and details mentioned across the selected audio files
- Answering questions about what was said, who spoke, and when
- Comparing or summarizing content across the selected files when relevant
- Being helpful and conversational

If asked about information not in the provided context, politely indicate that you don't have that information in the selected audio files."""  # noqa: E501

_LIBRARY_PROMPT = """You are an AI assistant helping a user discuss details about their audio files. The user has {count} audio file(s) that have been processed.
You have access to transcriptions of their audio content. Use the provided context from the audio transcription chunks to answer questions accurately. If the context doesn't contain relevant information, say so.

Focus on:
- Discussing the content, topics, and details mentioned across their audio files
- Answering questions about what was said, who spoke, and when
- Providing insights based on the transcriptions
- Comparing or summarizing content across multiple audio files if relevant
- Being helpful and conversational

If asked about information not in the provided context, politely indicate that you don't have that information in their audio files."""  # noqa: E501


@dataclass
class AssembledContext:
    history_turns: List[ConversationTurn]
    user_turn: ConversationTurn
    prompt_turns: List[Dict[str, str]]


def build_system_prompt(scope: ScopeSelection, display_name: Optional[str] = None) -> str:
    if scope.explicit and len(scope.files) == 1:
        prompt = _SINGLE_FILE_PROMPT
    elif scope.explicit:
        prompt = _MULTI_FILE_PROMPT.format(count=len(scope.files))
    else:
        prompt = _LIBRARY_PROMPT.format(count=len(scope.files))

    if display_name and display_name.strip():
        prompt += f"\n\nThe user's name is {display_name.strip()}. Address them by name when it feels natural."
    return prompt


def format_context(chunks: Sequence[RetrievedChunk], scope: ScopeSelection) -> str:
    """Render chunks as `[label][m:ss] text` blocks separated by blank lines."""
    label_files = len(scope.files) > 1
    blocks = []
    for index, chunk in enumerate(chunks, start=1):
        label = f'Chunk {index}'
        if label_files:
            filename = scope.filename_for(chunk.audio_file_id, chunk.audio_source_id)
            if filename:
                label = f'{label} - {filename}'
        timestamp = f'[{format_offset(chunk.start_time_sec)}]' if chunk.start_time_sec is not None else ''
        blocks.append(f'[{label}]{timestamp} {chunk.text.strip()}')
    return '\n\n'.join(blocks)


def build_user_prompt(message: str, context: str) -> str:
    return f"""User question: {message}

Relevant context from audio transcriptions:
{context or NO_CONTEXT_MARKER}

Please answer the user's question based on the context provided above."""


class ConversationContextAssembler:
    """Persist the new user turn, load bounded history and build the prompt turns."""

    def __init__(self, messages: Optional[ChatMessageRepository] = None, history_limit: Optional[int] = None):
        self.messages = messages or ChatMessageRepository()
        self.history_limit = config.chat.history_limit if history_limit is None else history_limit

    def assemble(self,
                 user_id: str,
                 primary_scope_id: Optional[str],
                 new_message: str,
                 chunks: Sequence[RetrievedChunk],
                 scope: ScopeSelection,
                 display_name: Optional[str] = None) -> AssembledContext:
        """
        Args:
            user_id: Requesting user
            primary_scope_id: Audio file the conversation is keyed to, if any
            new_message: The user's new message
            chunks: Post-filtered retrieval results
            scope: Resolved scope, used to pick the system prompt variant
            display_name: Optional name for personalization

        Returns:
            AssembledContext with chronological history (excluding the new turn) and prompt turns
        """
        user_turn = self.messages.append(user_id=user_id, role=ROLE_USER, content=new_message, audio_file_id=primary_scope_id)

        recent = self.messages.recent_by_owner_and_scope(user_id, primary_scope_id, self.history_limit)
        history = [turn for turn in reversed(recent) if turn.id != user_turn.id and turn.role in CONVERSATION_ROLES]
        logger.debug(f'Loaded {len(history)} history turn(s) for user {user_id}')

        prompt_turns = [{'role': ROLE_SYSTEM, 'content': build_system_prompt(scope, display_name)}]
        prompt_turns.extend(turn.as_prompt_message() for turn in history)
        prompt_turns.append({'role': ROLE_USER, 'content': build_user_prompt(new_message, format_context(chunks, scope))})

        return AssembledContext(history_turns=history, user_turn=user_turn, prompt_turns=prompt_turns)
