"""
Structured extraction of tasks and study questions from completed assistant answers.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from ..models.core import QUESTION_TYPES, TASK_PRIORITIES, Question, QuestionOption, Task, TokenUsage
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import parse_iso_datetime, utc_now
from .repositories import QuestionRepository, TaskRepository

logger = get_logger(__name__)

QUESTION_REQUEST_PHRASES = ('generate questions', 'create questions', 'make questions', 'practice questions', 'study questions',
                            'quiz me', 'create a quiz', 'make a quiz', 'create quiz', 'test me', 'test my knowledge',
                            'true or false', 'true/false', 'multiple choice', 'multiple-choice', 'flashcards')

TASK_REQUEST_PHRASES = ('extract tasks', 'create tasks', 'make tasks', 'list tasks', 'action items', 'action points',
                        'homework', 'to-do', 'todo', 'to do list', 'assignments', 'deadlines', 'next steps',
                        'follow-ups', 'follow ups')


class StructuredExtractionError(Exception):
    """Custom exception for structured extraction errors."""
    pass


@dataclass(frozen=True)
class ExtractionIntent:
    wants_tasks: bool = True
    wants_questions: bool = True

    @property
    def wants_anything(self) -> bool:
        return self.wants_tasks or self.wants_questions


@dataclass
class ExtractedObjects:
    tasks: List[Task] = field(default_factory=list)
    questions: List[Question] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ExtractionResult:
    task_ids: List[str] = field(default_factory=list)
    question_ids: List[str] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)


class ExtractionPolicy:
    """Decide from the user's message whether an answer should be mined for tasks and questions."""

    name = 'base'

    def intent_for(self, message: str) -> ExtractionIntent:
        raise NotImplementedError


class AlwaysExtractPolicy(ExtractionPolicy):
    name = 'always'

    def intent_for(self, message: str) -> ExtractionIntent:
        return ExtractionIntent(wants_tasks=True, wants_questions=True)


class KeywordExtractionPolicy(ExtractionPolicy):
    """Case-insensitive substring match against curated request phrases."""

    name = 'keyword'

    def __init__(self, task_phrases: Sequence[str] = TASK_REQUEST_PHRASES, question_phrases: Sequence[str] = QUESTION_REQUEST_PHRASES):
        self.task_phrases = tuple(p.lower() for p in task_phrases)
        self.question_phrases = tuple(p.lower() for p in question_phrases)

    def intent_for(self, message: str) -> ExtractionIntent:
        text = (message or '').lower()
        return ExtractionIntent(wants_tasks=any(p in text for p in self.task_phrases),
                                wants_questions=any(p in text for p in self.question_phrases))


def policy_from_name(name: str) -> ExtractionPolicy:
    policies = {AlwaysExtractPolicy.name: AlwaysExtractPolicy, KeywordExtractionPolicy.name: KeywordExtractionPolicy}
    if name not in policies:
        raise ValueError(f'Unknown extraction gating policy: {name}')
    return policies[name]()


def build_extraction_prompt(answer_text: str, intent: ExtractionIntent) -> str:
    if intent.wants_tasks:
        tasks_instruction = ('1. Tasks/Action Items/Homework: Extract any items that need to be done, with due dates if mentioned, '
                             'descriptions, priority if inferable, and location if mentioned.')
    else:
        tasks_instruction = '1. Tasks: DO NOT extract tasks. Return an empty array for tasks.'

    if intent.wants_questions:
        questions_instruction = ('2. Questions: Extract any questions that could be used for testing/learning '
                                 '(true-false or multiple choice only - NO short answer questions).')
    else:
        questions_instruction = '2. Questions: DO NOT extract questions. Return an empty array for questions.'

    return f"""Analyze the following text and extract the items described below.

Text to analyze:
{answer_text}

Extract:
{tasks_instruction}
{questions_instruction}

Return a JSON object with this exact structure:
```json
{{
  "tasks": [
    {{
      "description": "string (required)",
      "dueDate": "ISO date string (optional, only if mentioned)",
      "priority": "low|medium|high (optional, infer from context)",
      "location": "string (optional, only if a location is mentioned)"
    }}
  ],
  "questions": [
    {{
      "type": "true-false|multiple-choice",
      "question": "string (required)",
      "options": [{{"id": "string", "text": "string", "isCorrect": true}}],
      "correctAnswer": "string (optional; for true-false use 'true' or 'false')",
      "explanation": "string (optional)"
    }}
  ]
}}
```

For true-false questions include both "True" and "False" options, mark the correct one with isCorrect, and set correctAnswer.
If no tasks or questions are found, return empty arrays. Only extract items that are clearly tasks or questions."""


def _clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_tasks(raw_tasks: Any, user_id: str, scope_file_id: Optional[str]) -> List[Task]:
    """Validate task candidates and stamp them with the owner and scope."""
    if not isinstance(raw_tasks, list):
        return []

    tasks = []
    now = utc_now()
    for item in raw_tasks:
        if not isinstance(item, dict):
            continue
        description = _clean_str(item.get('description'))
        if not description:
            continue

        priority = _clean_str(item.get('priority'))
        priority = priority.lower() if priority else None
        if priority not in TASK_PRIORITIES:
            priority = None

        tasks.append(
            Task(id=str(uuid.uuid4()),
                 user_id=user_id,
                 audio_file_id=scope_file_id,
                 description=description,
                 due_date=parse_iso_datetime(item.get('dueDate')),
                 priority=priority,
                 location=_clean_str(item.get('location')),
                 status='pending',
                 created_at=now,
                 updated_at=now))
    return tasks


def _parse_options(raw_options: Any) -> Optional[List[QuestionOption]]:
    if not isinstance(raw_options, list) or not raw_options:
        return None
    options = []
    for opt in raw_options:
        if not isinstance(opt, dict):
            continue
        is_correct = opt.get('isCorrect')
        options.append(
            QuestionOption(id=_clean_str(opt.get('id')) or str(uuid.uuid4()),
                           text=_clean_str(opt.get('text')) or '',
                           is_correct=is_correct if isinstance(is_correct, bool) else None))
    return options or None


def parse_questions(raw_questions: Any, user_id: str, scope_file_id: Optional[str]) -> List[Question]:
    """Validate question candidates, filling default True/False options where missing."""
    if not isinstance(raw_questions, list):
        return []

    questions = []
    now = utc_now()
    for item in raw_questions:
        if not isinstance(item, dict):
            continue
        text = _clean_str(item.get('question'))
        question_type = _clean_str(item.get('type'))
        if not text or question_type not in QUESTION_TYPES:
            continue

        correct_answer = item.get('correctAnswer')
        if isinstance(correct_answer, bool):
            correct_answer = 'true' if correct_answer else 'false'
        correct_answer = _clean_str(correct_answer)

        options = _parse_options(item.get('options'))
        if options is None and question_type == 'true-false':
            true_is_correct = (correct_answer or '').lower() in ('true', 't')
            options = [
                QuestionOption(id=str(uuid.uuid4()), text='True', is_correct=true_is_correct),
                QuestionOption(id=str(uuid.uuid4()), text='False', is_correct=not true_is_correct)
            ]

        questions.append(
            Question(id=str(uuid.uuid4()),
                     user_id=user_id,
                     audio_file_id=scope_file_id,
                     type=question_type,
                     question=text,
                     options=options,
                     correct_answer=correct_answer,
                     explanation=_clean_str(item.get('explanation')),
                     created_at=now,
                     updated_at=now))
    return questions


class StructuredExtractionService:
    """Ask the LLM for task and question candidates found in an answer."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        logger.info('Initialized StructuredExtractionService')

    def extract(self, answer_text: str, user_id: str, scope_file_id: Optional[str] = None, intent: Optional[ExtractionIntent] = None) -> ExtractedObjects:
        """
        Args:
            answer_text: Completed assistant answer
            user_id: Owner stamped onto every candidate
            scope_file_id: Audio file stamped onto every candidate, if any
            intent: Which object kinds to extract (both if None)

        Returns:
            ExtractedObjects with validated, unpersisted candidates and the call's token usage

        Raises:
            StructuredExtractionError: If the model call fails or returns unusable output
        """
        intent = intent or ExtractionIntent()
        if not answer_text or not answer_text.strip() or not intent.wants_anything:
            return ExtractedObjects()

        turns = [{
            'role': 'system',
            'content': 'You are a structured data extraction assistant. Extract tasks and questions from text and return valid JSON only.'
        }, {
            'role': 'user',
            'content': build_extraction_prompt(answer_text, intent)
        }, {
            'role': 'assistant',
            'content': '```json'
        }]

        try:
            response, usage = self.llm.generate_response(turns, temperature=config.bedrock_llm.extraction_temperature, stop_sequences=['```'])
        except BedrockLLMError as e:
            logger.error(f'LLM error during structured extraction: {e}')
            raise StructuredExtractionError(f'Structured extraction failed: {e}')

        try:
            parsed = parse_json_object(response)
        except ValueError as e:
            logger.error(f'Failed to parse structured extraction JSON: {e}')
            raise StructuredExtractionError(f'Structured extraction returned invalid JSON: {e}')

        tasks = parse_tasks(parsed.get('tasks'), user_id, scope_file_id) if intent.wants_tasks else []
        questions = parse_questions(parsed.get('questions'), user_id, scope_file_id) if intent.wants_questions else []

        logger.debug(f'Extracted {len(tasks)} task(s) and {len(questions)} question(s)')
        return ExtractedObjects(tasks=tasks, questions=questions, token_usage=usage or TokenUsage())


class StructuredExtractionPipeline:
    """Extract and persist tasks and questions. Never raises."""

    def __init__(self,
                 extractor: Optional[StructuredExtractionService] = None,
                 tasks: Optional[TaskRepository] = None,
                 questions: Optional[QuestionRepository] = None,
                 policy: Optional[ExtractionPolicy] = None):
        self.extractor = extractor or StructuredExtractionService()
        self.tasks = tasks or TaskRepository()
        self.questions = questions or QuestionRepository()
        self.policy = policy or policy_from_name(config.chat.extraction_gating)

    def extract(self, answer_text: str, user_id: str, scope_file_id: Optional[str] = None, intent: Optional[ExtractionIntent] = None) -> ExtractionResult:
        """Extract candidates from the answer and persist them, degrading to an empty result on failure.

        Args:
            answer_text: Completed (possibly partial) assistant answer
            user_id: Owner of the created objects
            scope_file_id: Audio file the objects relate to, if any
            intent: Which object kinds to extract (both if None)

        Returns:
            ExtractionResult with the IDs of persisted objects and the extraction token usage
        """
        try:
            extracted = self.extractor.extract(answer_text, user_id, scope_file_id, intent)
        except Exception as e:
            logger.error(f'Structured extraction degraded to empty result: {e}')
            return ExtractionResult()

        result = ExtractionResult(token_usage=extracted.token_usage)

        for task in extracted.tasks:
            try:
                result.task_ids.append(self.tasks.create(task))
            except Exception as e:
                logger.error(f'Failed to persist extracted task {task.id}: {e}')

        for question in extracted.questions:
            try:
                result.question_ids.append(self.questions.create(question))
            except Exception as e:
                logger.error(f'Failed to persist extracted question {question.id}: {e}')

        if result.task_ids or result.question_ids:
            logger.info(f'Created {len(result.task_ids)} task(s) and {len(result.question_ids)} question(s) for user {user_id}')
        return result

    def extract_if_requested(self, user_message: str, answer_text: str, user_id: str, scope_file_id: Optional[str] = None) -> ExtractionResult:
        """Gated variant: only extract what the user's message asks for, per the configured policy."""
        intent = self.policy.intent_for(user_message)
        if not intent.wants_anything:
            logger.debug('Extraction skipped: message does not request tasks or questions')
            return ExtractionResult()
        return self.extract(answer_text, user_id, scope_file_id, intent)
