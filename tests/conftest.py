"""Pytest configuration helpers and in-memory stand-ins for the AWS-backed collaborators."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path


def _ensure_repo_on_path() -> None:
    """Allow tests to import from repo modules without setting PYTHONPATH."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

import pytest  # noqa: E402

from transcript_rag.models.core import AudioFile, ConversationTurn, TokenUsage  # noqa: E402
from transcript_rag.utils.bedrock_embed import BedrockEmbedError  # noqa: E402
from transcript_rag.utils.bedrock_llm import BedrockLLMError  # noqa: E402
from transcript_rag.utils.opensearch_client import OpenSearchError  # noqa: E402


class FakeAudioFiles:

    def __init__(self, files=(), owner_leak=()):
        self.files = {f.id: f for f in files}
        # Files returned by find_by_owner regardless of owner, to exercise the resolver's re-check
        self.owner_leak = list(owner_leak)
        self.calls = []

    def find_by_ids(self, ids):
        self.calls.append(('find_by_ids', list(ids)))
        return [self.files[i] for i in ids if i in self.files]

    def find_by_owner(self, user_id, limit=1000):
        self.calls.append(('find_by_owner', user_id))
        return [f for f in self.files.values() if f.user_id == user_id] + self.owner_leak


class FakeMessages:

    def __init__(self):
        self.turns = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.fail_on_role = None

    def append(self, user_id, role, content, audio_file_id=None, task_ids=None, question_ids=None, token_usage=None):
        if self.fail_on_role == role:
            raise OpenSearchError('index unavailable')
        self._clock += timedelta(seconds=1)
        turn = ConversationTurn(id=f'turn-{len(self.turns) + 1}',
                                user_id=user_id,
                                role=role,
                                content=content,
                                created_at=self._clock,
                                audio_file_id=audio_file_id,
                                task_ids=task_ids,
                                question_ids=question_ids,
                                token_usage=token_usage)
        self.turns.append(turn)
        return turn

    def recent_by_owner_and_scope(self, user_id, audio_file_id, limit):
        matching = [t for t in self.turns if t.user_id == user_id and (not audio_file_id or t.audio_file_id == audio_file_id)]
        return list(reversed(matching))[:limit]


class FakeObjectStore:

    def __init__(self):
        self.items = {}
        self.fail_ids = set()
        self.fail_all = False

    def create(self, item):
        if self.fail_all or item.id in self.fail_ids:
            raise OpenSearchError('write rejected')
        self.items[item.id] = item
        return item.id

    def find_by_ids(self, ids):
        return [self.items[i] for i in ids if i in self.items]


class FakeEmbed:

    def __init__(self, fail=False):
        self.fail = fail
        self.queries = []

    def embed_query(self, text):
        self.queries.append(text)
        if self.fail:
            raise BedrockEmbedError('embedding unavailable')
        return [0.1, 0.2, 0.3, 0.4]


class FakeSearch:

    def __init__(self, hits=(), fail=False):
        self.hits = list(hits)
        self.fail = fail
        self.filters = []
        self.top_ks = []

    def vector_search(self, query_vector, retrieval_filter, top_k=10):
        self.filters.append(retrieval_filter)
        self.top_ks.append(top_k)
        if self.fail:
            raise OpenSearchError('search unavailable')
        return list(self.hits)


class FakeLLM:
    """Streams preset fragments, optionally failing after `fail_after` of them."""

    def __init__(self, fragments=('Hello', ' world'), fail_after=None, extraction_response='{"tasks": [], "questions": []}',
                 extraction_usage=None, extraction_error=None, usage=None):
        self.fragments = list(fragments)
        # Provider-reported usage delivered after the last fragment, like the Converse metadata event
        self.usage = usage
        self.fail_after = fail_after
        self.extraction_response = extraction_response
        self.extraction_usage = extraction_usage
        self.extraction_error = extraction_error
        self.stream_calls = []
        self.generate_calls = []

    def stream_response(self, turns, max_tokens=None, temperature=None, on_usage=None):
        self.stream_calls.append(list(turns))
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index >= self.fail_after:
                raise BedrockLLMError('stream broke')
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise BedrockLLMError('stream broke')
        if self.usage is not None and on_usage is not None:
            on_usage(self.usage)

    def generate_response(self, turns, max_tokens=None, temperature=None, stop_sequences=None):
        self.generate_calls.append({'turns': list(turns), 'temperature': temperature, 'stop_sequences': stop_sequences})
        if self.extraction_error is not None:
            raise self.extraction_error
        return self.extraction_response, self.extraction_usage


class FakeTokenCounter:
    """One token per prompt message and one per whitespace-separated completion word."""

    def usage_for(self, messages, completion):
        return TokenUsage.of(len(list(messages)), len(completion.split()))


def make_chunk_hit(text, score, user_id='user-1', audio_file_id='file-1', audio_source_id='bucket/a.mp3', start=None, end=None):
    return {
        'id': f'{audio_file_id}-{text}',
        'score': score,
        'document': {
            'text': text,
            'user_id': user_id,
            'audio_file_id': audio_file_id,
            'audio_source_id': audio_source_id,
            'start_time_sec': start,
            'end_time_sec': end
        }
    }


@pytest.fixture
def audio_files():
    return FakeAudioFiles([
        AudioFile(id='file-1', user_id='user-1', bucket='bucket', key='a.mp3', filename='lecture-1.mp3'),
        AudioFile(id='file-2', user_id='user-1', bucket='bucket', key='b.mp3', filename='lecture-2.mp3'),
        AudioFile(id='file-x', user_id='user-2', bucket='bucket', key='x.mp3', filename='other.mp3'),
    ])


@pytest.fixture
def messages():
    return FakeMessages()
