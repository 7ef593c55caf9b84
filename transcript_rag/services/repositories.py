"""
OpenSearch-backed repositories for audio files, conversation turns, tasks and questions.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import AudioFile, ConversationTurn, Question, QuestionOption, Task, TokenUsage
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import (INDEX_AUDIO_FILE, INDEX_CHAT_MESSAGE, INDEX_CHUNK, INDEX_QUESTION, INDEX_TASK,
                                       OpenSearchClient, OpenSearchError)
from ..utils.timestamp_utils import parse_iso_datetime, utc_now

logger = get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Any) -> datetime:
    return parse_iso_datetime(value) or datetime.fromtimestamp(0, timezone.utc)


def bootstrap_indexes(opensearch: OpenSearchClient) -> None:
    """Create every index the engine reads from or writes to."""
    for index_type in (INDEX_CHUNK, INDEX_AUDIO_FILE, INDEX_CHAT_MESSAGE, INDEX_TASK, INDEX_QUESTION):
        try:
            opensearch.create_index_if_not_exists(index_type)
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch index {index_type}: {e}')


class AudioFileRepository:
    """Read access to ingested audio file metadata."""

    def __init__(self, opensearch: Optional[OpenSearchClient] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

    @staticmethod
    def _to_domain(doc: Dict[str, Any]) -> AudioFile:
        return AudioFile(id=doc.get('id', ''),
                         user_id=doc.get('user_id', ''),
                         bucket=doc.get('bucket'),
                         key=doc.get('key'),
                         filename=doc.get('filename'))

    def find_by_ids(self, ids: Sequence[str]) -> List[AudioFile]:
        return [self._to_domain(doc) for doc in self.opensearch.get_documents(INDEX_AUDIO_FILE, ids)]

    def find_by_owner(self, user_id: str, limit: int = 1000) -> List[AudioFile]:
        docs = self.opensearch.search_documents(INDEX_AUDIO_FILE, {'user_id': user_id}, size=limit, sort_field='created_at')
        return [self._to_domain(doc) for doc in docs]


class ChatMessageRepository:
    """Append-only store of conversation turns."""

    def __init__(self, opensearch: Optional[OpenSearchClient] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

    @staticmethod
    def _to_domain(doc: Dict[str, Any]) -> ConversationTurn:
        usage = doc.get('token_usage')
        return ConversationTurn(id=doc.get('id', ''),
                                user_id=doc.get('user_id', ''),
                                role=doc.get('role', ''),
                                content=doc.get('content', ''),
                                created_at=_dt(doc.get('created_at')),
                                audio_file_id=doc.get('audio_file_id'),
                                task_ids=doc.get('task_ids') or None,
                                question_ids=doc.get('question_ids') or None,
                                token_usage=TokenUsage(**usage) if usage else None)

    def append(self,
               user_id: str,
               role: str,
               content: str,
               audio_file_id: Optional[str] = None,
               task_ids: Optional[List[str]] = None,
               question_ids: Optional[List[str]] = None,
               token_usage: Optional[TokenUsage] = None) -> ConversationTurn:
        """Persist a new turn and return it with its generated ID."""
        turn = ConversationTurn(id=str(uuid.uuid4()),
                                user_id=user_id,
                                role=role,
                                content=content,
                                created_at=utc_now(),
                                audio_file_id=audio_file_id,
                                task_ids=task_ids,
                                question_ids=question_ids,
                                token_usage=token_usage)

        document = {
            'id': turn.id,
            'user_id': turn.user_id,
            'audio_file_id': turn.audio_file_id,
            'role': turn.role,
            'content': turn.content,
            'created_at': _iso(turn.created_at)
        }
        if task_ids:
            document['task_ids'] = task_ids
        if question_ids:
            document['question_ids'] = question_ids
        if token_usage:
            document['token_usage'] = token_usage.to_dict()

        self.opensearch.index_document(document, INDEX_CHAT_MESSAGE, doc_id=turn.id)
        return turn

    def recent_by_owner_and_scope(self, user_id: str, audio_file_id: Optional[str], limit: int) -> List[ConversationTurn]:
        """Return the most recent turns, newest first.

        Without an audio file the history spans all of the user's turns.
        """
        terms: Dict[str, Any] = {'user_id': user_id}
        if audio_file_id:
            terms['audio_file_id'] = audio_file_id
        docs = self.opensearch.search_documents(INDEX_CHAT_MESSAGE, terms, size=limit, sort_field='created_at')
        return [self._to_domain(doc) for doc in docs]


class TaskRepository:

    def __init__(self, opensearch: Optional[OpenSearchClient] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

    @staticmethod
    def _to_domain(doc: Dict[str, Any]) -> Task:
        return Task(id=doc.get('id', ''),
                    user_id=doc.get('user_id', ''),
                    description=doc.get('description', ''),
                    created_at=_dt(doc.get('created_at')),
                    updated_at=_dt(doc.get('updated_at')),
                    audio_file_id=doc.get('audio_file_id'),
                    due_date=parse_iso_datetime(doc.get('due_date')),
                    priority=doc.get('priority'),
                    location=doc.get('location'),
                    status=doc.get('status', 'pending'))

    def create(self, task: Task) -> str:
        document = {
            'id': task.id,
            'user_id': task.user_id,
            'audio_file_id': task.audio_file_id,
            'description': task.description,
            'due_date': _iso(task.due_date),
            'priority': task.priority,
            'location': task.location,
            'status': task.status,
            'created_at': _iso(task.created_at),
            'updated_at': _iso(task.updated_at)
        }
        self.opensearch.index_document(document, INDEX_TASK, doc_id=task.id)
        return task.id

    def find_by_ids(self, ids: Sequence[str]) -> List[Task]:
        return [self._to_domain(doc) for doc in self.opensearch.get_documents(INDEX_TASK, ids)]


class QuestionRepository:

    def __init__(self, opensearch: Optional[OpenSearchClient] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

    @staticmethod
    def _to_domain(doc: Dict[str, Any]) -> Question:
        options = doc.get('options')
        return Question(id=doc.get('id', ''),
                        user_id=doc.get('user_id', ''),
                        type=doc.get('type', ''),
                        question=doc.get('question', ''),
                        created_at=_dt(doc.get('created_at')),
                        updated_at=_dt(doc.get('updated_at')),
                        audio_file_id=doc.get('audio_file_id'),
                        options=[
                            QuestionOption(id=o.get('id', ''), text=o.get('text', ''), is_correct=o.get('is_correct'))
                            for o in options
                        ] if options else None,
                        correct_answer=doc.get('correct_answer'),
                        explanation=doc.get('explanation'))

    def create(self, question: Question) -> str:
        document = {
            'id': question.id,
            'user_id': question.user_id,
            'audio_file_id': question.audio_file_id,
            'type': question.type,
            'question': question.question,
            'options': [{
                'id': o.id,
                'text': o.text,
                'is_correct': o.is_correct
            } for o in question.options] if question.options else None,
            'correct_answer': question.correct_answer,
            'explanation': question.explanation,
            'created_at': _iso(question.created_at),
            'updated_at': _iso(question.updated_at)
        }
        self.opensearch.index_document(document, INDEX_QUESTION, doc_id=question.id)
        return question.id

    def find_by_ids(self, ids: Sequence[str]) -> List[Question]:
        return [self._to_domain(doc) for doc in self.opensearch.get_documents(INDEX_QUESTION, ids)]
