"""
Core data models for the transcript chat engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

ROLE_USER = 'user'
ROLE_ASSISTANT = 'assistant'
ROLE_SYSTEM = 'system'
CONVERSATION_ROLES = (ROLE_USER, ROLE_ASSISTANT)

TASK_PRIORITIES = ('low', 'medium', 'high')
TASK_STATUSES = ('pending', 'in-progress', 'completed')
QUESTION_TYPES = ('true-false', 'multiple-choice')


@dataclass(frozen=True)
class AudioFile:
    """An ingested audio asset owned by exactly one user."""
    id: str
    user_id: str
    bucket: Optional[str] = None
    key: Optional[str] = None
    filename: Optional[str] = None

    @property
    def source_identifier(self) -> Optional[str]:
        """Canonical `bucket/key` identifier, or None when the object location is incomplete."""
        if self.bucket and self.key:
            return f'{self.bucket}/{self.key}'
        return None


@dataclass(frozen=True)
class ScopeSelection:
    """The authorized set of audio files a single request may read from.

    Every member is owned by `user_id`; the resolver refuses to build a selection otherwise.
    """
    user_id: str
    files: Tuple[AudioFile, ...]
    explicit: bool
    requested_ids: Tuple[str, ...] = ()

    @property
    def file_ids(self) -> List[str]:
        return [f.id for f in self.files]

    @property
    def source_identifiers(self) -> List[str]:
        return [f.source_identifier for f in self.files if f.source_identifier]

    @property
    def file_id_set(self) -> FrozenSet[str]:
        return frozenset(self.file_ids)

    @property
    def source_identifier_set(self) -> FrozenSet[str]:
        return frozenset(self.source_identifiers)

    @property
    def primary_file_id(self) -> Optional[str]:
        """The single explicitly requested file, used to key conversation history."""
        if self.explicit and len(self.files) == 1:
            return self.files[0].id
        return None

    def source_identifier_for(self, file_id: str) -> Optional[str]:
        for f in self.files:
            if f.id == file_id:
                return f.source_identifier
        return None

    def filename_for(self, file_id: Optional[str], source_id: Optional[str] = None) -> Optional[str]:
        for f in self.files:
            if (file_id and f.id == file_id) or (source_id and f.source_identifier == source_id):
                return f.filename
        return None


@dataclass(frozen=True)
class RetrievalFilter:
    """Predicate sent to the similarity-search provider. `user_id` is never omitted."""
    user_id: str
    audio_file_id: Optional[str] = None
    audio_source_id: Optional[str] = None
    audio_file_ids: Tuple[str, ...] = ()
    audio_source_ids: Tuple[str, ...] = ()

    @property
    def has_source_constraint(self) -> bool:
        return bool(self.audio_file_id or self.audio_source_id or self.audio_file_ids or self.audio_source_ids)


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting for one or more model calls."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> 'TokenUsage':
        return cls(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=prompt_tokens + completion_tokens)

    def __add__(self, other: 'TokenUsage') -> 'TokenUsage':
        return TokenUsage(prompt_tokens=self.prompt_tokens + other.prompt_tokens,
                          completion_tokens=self.completion_tokens + other.completion_tokens,
                          total_tokens=self.total_tokens + other.total_tokens)

    def to_dict(self) -> Dict[str, int]:
        return {
            'prompt_tokens': self.prompt_tokens,
            'completion_tokens': self.completion_tokens,
            'total_tokens': self.total_tokens
        }


@dataclass
class ConversationTurn:
    """One message in a user's conversation, optionally keyed to a single audio file."""
    id: str
    user_id: str
    role: str
    content: str
    created_at: datetime
    audio_file_id: Optional[str] = None
    task_ids: Optional[List[str]] = None
    question_ids: Optional[List[str]] = None
    token_usage: Optional[TokenUsage] = None

    def as_prompt_message(self) -> Dict[str, str]:
        return {'role': self.role, 'content': self.content}


@dataclass(frozen=True)
class RetrievedChunk:
    """A transcript chunk returned by similarity search. Never persisted."""
    text: str
    score: float
    owner_user_id: Optional[str]
    audio_file_id: Optional[str] = None
    audio_source_id: Optional[str] = None
    start_time_sec: Optional[float] = None
    end_time_sec: Optional[float] = None
    transcript_id: Optional[str] = None


@dataclass
class Task:
    """An action item extracted from an assistant answer."""
    id: str
    user_id: str
    description: str
    created_at: datetime
    updated_at: datetime
    audio_file_id: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None  # low | medium | high
    location: Optional[str] = None
    status: str = 'pending'


@dataclass
class QuestionOption:
    id: str
    text: str
    is_correct: Optional[bool] = None


@dataclass
class Question:
    """A true-false or multiple-choice study question extracted from an assistant answer."""
    id: str
    user_id: str
    type: str  # true-false | multiple-choice
    question: str
    created_at: datetime
    updated_at: datetime
    audio_file_id: Optional[str] = None
    options: Optional[List[QuestionOption]] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None


@dataclass(frozen=True)
class Mention:
    """A deduplicated, threshold-passing occurrence of a search term."""
    timestamp: str
    quote: str
    audio_file_id: Optional[str]
    start_time_sec: Optional[float]
    end_time_sec: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'quote': self.quote,
            'audio_file_id': self.audio_file_id,
            'start_time_sec': self.start_time_sec,
            'end_time_sec': self.end_time_sec
        }


@dataclass
class MentionSearchResult:
    term: str
    count: int
    mentions: List[Mention] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'term': self.term, 'count': self.count, 'mentions': [m.to_dict() for m in self.mentions]}
