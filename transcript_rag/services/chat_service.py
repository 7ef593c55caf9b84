"""
Chat Service: retrieval-augmented, streamed answers over a user's audio transcripts.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from ..models.core import ROLE_ASSISTANT, ConversationTurn, MentionSearchResult, Question, ScopeSelection, Task, TokenUsage
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from .answer_streamer import AnswerStream, AnswerStreamer
from .audio_scope import AudioScopeResolver, RequestedIds
from .conversation_context import ConversationContextAssembler
from .errors import ProviderFailureError
from .mention_search import MentionSearchEngine
from .repositories import AudioFileRepository, ChatMessageRepository, QuestionRepository, TaskRepository
from .retrieval import ChunkRetriever, RetrievalFilterBuilder
from .structured_extraction import ExtractionResult, StructuredExtractionPipeline, StructuredExtractionService

logger = get_logger(__name__)


@dataclass
class ChatResult:
    """Final outcome of one chat turn, available once its stream is exhausted."""
    answer: str
    user_turn_id: str
    assistant_turn_id: Optional[str]
    task_ids: List[str] = field(default_factory=list)
    question_ids: List[str] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None


@dataclass
class ConversationEntry:
    turn: ConversationTurn
    tasks: List[Task] = field(default_factory=list)
    questions: List[Question] = field(default_factory=list)


class ChatStream:
    """Single-use iterator over answer fragments for one chat turn.

    When iteration ends, normally, on a provider failure or because the caller closed it early,
    the accumulated answer is run through extraction and persisted as the assistant turn. A
    mid-stream provider failure is re-raised after that bookkeeping.
    """

    def __init__(self, service: 'ChatService', user_id: str, message: str, scope: ScopeSelection, user_turn: ConversationTurn,
                 answer: AnswerStream, gate_extraction: bool = True):
        self._service = service
        self.user_id = user_id
        self.message = message
        self.scope = scope
        self.user_turn = user_turn
        self.answer = answer
        self.gate_extraction = gate_extraction
        self.result: Optional[ChatResult] = None
        self._started = False

    def __iter__(self) -> Iterator[str]:
        if self._started:
            raise RuntimeError('ChatStream can only be iterated once')
        self._started = True
        return self._generate()

    def _generate(self) -> Iterator[str]:
        try:
            yield from self.answer
        finally:
            self.result = self._service._finalize(self)

        if self.answer.error is not None:
            raise self.answer.error

    def collect(self) -> ChatResult:
        """Consume the whole stream and return the final result."""
        for _ in self:
            pass
        return self.result


class ChatService:
    """Orchestrates scope resolution, retrieval, context assembly, streaming and extraction."""

    def __init__(self,
                 resolver: Optional[AudioScopeResolver] = None,
                 filter_builder: Optional[RetrievalFilterBuilder] = None,
                 retriever: Optional[ChunkRetriever] = None,
                 assembler: Optional[ConversationContextAssembler] = None,
                 streamer: Optional[AnswerStreamer] = None,
                 extraction: Optional[StructuredExtractionPipeline] = None,
                 mentions: Optional[MentionSearchEngine] = None,
                 messages: Optional[ChatMessageRepository] = None,
                 tasks: Optional[TaskRepository] = None,
                 questions: Optional[QuestionRepository] = None,
                 top_k: Optional[int] = None):
        """Initialize the chat service, sharing one client per provider among default collaborators."""
        self._opensearch = None
        self._embed = None
        self._llm = None

        self.messages = messages or ChatMessageRepository(self._shared_opensearch())
        self.tasks = tasks or TaskRepository(self._shared_opensearch())
        self.questions = questions or QuestionRepository(self._shared_opensearch())
        self.resolver = resolver or AudioScopeResolver(AudioFileRepository(self._shared_opensearch()))
        self.filter_builder = filter_builder or RetrievalFilterBuilder()
        self.retriever = retriever or ChunkRetriever(self._shared_embed(), self._shared_opensearch())
        self.assembler = assembler or ConversationContextAssembler(self.messages)
        self.streamer = streamer or AnswerStreamer(self._shared_llm())
        self.extraction = extraction or StructuredExtractionPipeline(StructuredExtractionService(self._shared_llm()), self.tasks,
                                                                     self.questions)
        self.mentions = mentions or MentionSearchEngine(self.resolver, self.retriever, self.filter_builder)
        self.top_k = config.chat.top_k if top_k is None else top_k

        logger.info('Initialized ChatService')

    def _shared_opensearch(self) -> OpenSearchClient:
        if self._opensearch is None:
            self._opensearch = OpenSearchClient(config.opensearch)
        return self._opensearch

    def _shared_embed(self) -> BedrockEmbed:
        if self._embed is None:
            self._embed = BedrockEmbed(config.bedrock_embed)
        return self._embed

    def _shared_llm(self) -> BedrockLLM:
        if self._llm is None:
            self._llm = BedrockLLM(config.bedrock_llm)
        return self._llm

    def chat(self,
             user_id: str,
             message: str,
             audio_file_ids: RequestedIds = None,
             top_k: Optional[int] = None,
             display_name: Optional[str] = None,
             gate_extraction: bool = True) -> ChatStream:
        """Answer a question about the user's audio transcripts.

        Scope, retrieval and the user turn are handled eagerly, so precondition failures surface
        here before any generation call. The answer itself is produced lazily by the returned stream.

        Args:
            user_id: Requesting user
            message: The user's question
            audio_file_ids: One file ID, several, or None for the whole library
            top_k: Number of chunks to retrieve
            display_name: Optional name for prompt personalization
            gate_extraction: Only extract tasks/questions the message asks for (extract both if False)

        Returns:
            ChatStream yielding answer fragments; `result` is set once it is exhausted

        Raises:
            ValueError: If the message is blank
            NotFoundError, UnauthorizedError, NoSourcesError: On scope precondition failures
            ProviderFailureError: If embedding, search or the conversation store fails
        """
        if not message or not message.strip():
            raise ValueError('message is required')

        scope = self.resolver.resolve(user_id, audio_file_ids)
        retrieval_filter = self.filter_builder.build(user_id, list(scope.requested_ids), scope)
        chunks = self.retriever.retrieve(message, scope, retrieval_filter, self.top_k if top_k is None else top_k)

        try:
            context = self.assembler.assemble(user_id, scope.primary_file_id, message, chunks, scope, display_name)
        except OpenSearchError as e:
            raise ProviderFailureError('conversation store', e)

        logger.info(f'Chat turn {context.user_turn.id} for user {user_id}: {len(chunks)} chunk(s), '
                    f'{len(context.history_turns)} history turn(s)')

        return ChatStream(self, user_id, message, scope, context.user_turn, self.streamer.stream(context.prompt_turns), gate_extraction)

    def _finalize(self, stream: ChatStream) -> ChatResult:
        """Run extraction on the accumulated answer and persist the assistant turn."""
        answer = stream.answer.text
        file_id = stream.scope.primary_file_id

        if not answer.strip():
            logger.warning(f'No answer generated for chat turn {stream.user_turn.id}; nothing to persist')
            return ChatResult(answer='', user_turn_id=stream.user_turn.id, assistant_turn_id=None, token_usage=stream.answer.usage)

        if stream.gate_extraction:
            extraction = self.extraction.extract_if_requested(stream.message, answer, stream.user_id, file_id)
        else:
            extraction = self.extraction.extract(answer, stream.user_id, file_id)

        usage = (stream.answer.usage or TokenUsage()) + extraction.token_usage

        try:
            assistant_turn = self.messages.append(user_id=stream.user_id,
                                                  role=ROLE_ASSISTANT,
                                                  content=answer,
                                                  audio_file_id=file_id,
                                                  task_ids=extraction.task_ids or None,
                                                  question_ids=extraction.question_ids or None,
                                                  token_usage=usage if usage.total_tokens > 0 else None)
        except OpenSearchError as e:
            logger.error(f'Failed to persist assistant turn for chat turn {stream.user_turn.id}: {e}')
            raise ProviderFailureError('conversation store', e)

        return self._result(stream, answer, assistant_turn, extraction, usage)

    @staticmethod
    def _result(stream: ChatStream, answer: str, assistant_turn: ConversationTurn, extraction: ExtractionResult,
                usage: TokenUsage) -> ChatResult:
        return ChatResult(answer=answer,
                          user_turn_id=stream.user_turn.id,
                          assistant_turn_id=assistant_turn.id,
                          task_ids=list(extraction.task_ids),
                          question_ids=list(extraction.question_ids),
                          token_usage=usage)

    def find_mentions(self,
                      user_id: str,
                      term: str,
                      audio_file_ids: RequestedIds = None,
                      top_k: Optional[int] = None,
                      match_all: bool = False) -> MentionSearchResult:
        return self.mentions.find_mentions(user_id, term, audio_file_ids, top_k, match_all)

    def get_conversation(self, user_id: str, audio_file_id: Optional[str] = None, limit: int = 50) -> List[ConversationEntry]:
        """Return recent turns in chronological order with their linked tasks and questions.

        Raises:
            NotFoundError, UnauthorizedError: If `audio_file_id` is unknown or not the user's
            ProviderFailureError: If the stores cannot be read
        """
        if audio_file_id:
            self.resolver.authorize_file(user_id, audio_file_id)

        try:
            turns = list(reversed(self.messages.recent_by_owner_and_scope(user_id, audio_file_id, limit)))
            task_ids = [tid for turn in turns for tid in (turn.task_ids or [])]
            question_ids = [qid for turn in turns for qid in (turn.question_ids or [])]

            with ThreadPoolExecutor(max_workers=2) as executor:
                tasks_future = executor.submit(self.tasks.find_by_ids, task_ids)
                questions_future = executor.submit(self.questions.find_by_ids, question_ids)
                tasks = {t.id: t for t in tasks_future.result() if t.user_id == user_id}
                questions = {q.id: q for q in questions_future.result() if q.user_id == user_id}
        except OpenSearchError as e:
            raise ProviderFailureError('conversation store', e)

        return [
            ConversationEntry(turn=turn,
                              tasks=[tasks[tid] for tid in (turn.task_ids or []) if tid in tasks],
                              questions=[questions[qid] for qid in (turn.question_ids or []) if qid in questions])
            for turn in turns
        ]
