import json

import pytest

from conftest import FakeLLM, FakeObjectStore
from transcript_rag.models.core import TokenUsage
from transcript_rag.services.structured_extraction import (AlwaysExtractPolicy, ExtractionIntent, KeywordExtractionPolicy,
                                                           StructuredExtractionError, StructuredExtractionPipeline,
                                                           StructuredExtractionService, build_extraction_prompt,
                                                           parse_questions, parse_tasks, policy_from_name)
from transcript_rag.utils.bedrock_llm import BedrockLLMError

EXTRACTION_JSON = json.dumps({
    'tasks': [{
        'description': 'Read chapter 4',
        'dueDate': '2024-03-01T00:00:00Z',
        'priority': 'High',
        'location': 'Library'
    }, {
        'description': '   '
    }],
    'questions': [{
        'type': 'true-false',
        'question': 'The mitochondria is the powerhouse of the cell.',
        'correctAnswer': 'true'
    }, {
        'type': 'short-answer',
        'question': 'Explain photosynthesis.'
    }]
})


def _pipeline(llm, tasks=None, questions=None, policy=None):
    return StructuredExtractionPipeline(StructuredExtractionService(llm), tasks or FakeObjectStore(), questions or FakeObjectStore(),
                                        policy or KeywordExtractionPolicy())


def test_parse_tasks_validates_and_stamps_scope():
    tasks = parse_tasks(json.loads(EXTRACTION_JSON)['tasks'], 'user-1', 'file-1')

    assert len(tasks) == 1
    task = tasks[0]
    assert task.description == 'Read chapter 4'
    assert task.priority == 'high'
    assert task.location == 'Library'
    assert task.due_date.year == 2024
    assert task.user_id == 'user-1'
    assert task.audio_file_id == 'file-1'
    assert task.status == 'pending'


def test_parse_tasks_drops_unknown_priority_and_bad_dates():
    tasks = parse_tasks([{'description': 'Call Bob', 'priority': 'urgent', 'dueDate': 'next week'}], 'user-1', None)

    assert tasks[0].priority is None
    assert tasks[0].due_date is None
    assert tasks[0].audio_file_id is None


def test_parse_tasks_ignores_non_list():
    assert parse_tasks({'description': 'x'}, 'user-1', None) == []


def test_parse_questions_fills_true_false_options():
    questions = parse_questions(json.loads(EXTRACTION_JSON)['questions'], 'user-1', 'file-1')

    assert len(questions) == 1
    options = questions[0].options
    assert [o.text for o in options] == ['True', 'False']
    assert [o.is_correct for o in options] == [True, False]


def test_parse_questions_converts_boolean_answer_and_keeps_options():
    questions = parse_questions([{
        'type': 'multiple-choice',
        'question': 'Capital of France?',
        'options': [{'id': 'a', 'text': 'Paris', 'isCorrect': True}, {'id': 'b', 'text': 'Rome', 'isCorrect': False}],
        'explanation': ' Paris is the capital. '
    }, {
        'type': 'true-false',
        'question': 'Water boils at 50C.',
        'correctAnswer': False
    }], 'user-1', None)

    assert [o.id for o in questions[0].options] == ['a', 'b']
    assert questions[0].explanation == 'Paris is the capital.'
    assert questions[1].correct_answer == 'false'
    assert [o.is_correct for o in questions[1].options] == [False, True]


def test_keyword_policy():
    policy = KeywordExtractionPolicy()

    assert policy.intent_for('Please QUIZ ME on this lecture') == ExtractionIntent(wants_tasks=False, wants_questions=True)
    assert policy.intent_for('What are the action items?') == ExtractionIntent(wants_tasks=True, wants_questions=False)
    assert not policy.intent_for('Summarize the talk').wants_anything


def test_policy_from_name():
    assert isinstance(policy_from_name('always'), AlwaysExtractPolicy)
    assert isinstance(policy_from_name('keyword'), KeywordExtractionPolicy)
    with pytest.raises(ValueError):
        policy_from_name('sometimes')


def test_prompt_disables_unrequested_kinds():
    prompt = build_extraction_prompt('answer', ExtractionIntent(wants_tasks=False, wants_questions=True))

    assert 'DO NOT extract tasks' in prompt
    assert 'DO NOT extract questions' not in prompt


def test_service_uses_json_prefill_and_stop_sequence():
    llm = FakeLLM(extraction_response=EXTRACTION_JSON, extraction_usage=TokenUsage.of(100, 20))

    extracted = StructuredExtractionService(llm).extract('Read chapter 4 by March.', 'user-1')

    call = llm.generate_calls[0]
    assert call['turns'][-1] == {'role': 'assistant', 'content': '```json'}
    assert call['stop_sequences'] == ['```']
    assert len(extracted.tasks) == 1
    assert len(extracted.questions) == 1
    assert extracted.token_usage.total_tokens == 120


def test_service_skips_model_call_for_empty_answer():
    llm = FakeLLM()

    extracted = StructuredExtractionService(llm).extract('  ', 'user-1')

    assert llm.generate_calls == []
    assert extracted.tasks == [] and extracted.questions == []


def test_service_raises_on_invalid_json():
    with pytest.raises(StructuredExtractionError):
        StructuredExtractionService(FakeLLM(extraction_response='not json at all')).extract('answer', 'user-1')


def test_pipeline_persists_and_returns_ids():
    tasks, questions = FakeObjectStore(), FakeObjectStore()
    pipeline = _pipeline(FakeLLM(extraction_response=EXTRACTION_JSON), tasks, questions)

    result = pipeline.extract('answer', 'user-1', 'file-1')

    assert result.task_ids == list(tasks.items)
    assert result.question_ids == list(questions.items)
    assert all(t.audio_file_id == 'file-1' for t in tasks.items.values())


def test_pipeline_degrades_when_model_fails():
    pipeline = _pipeline(FakeLLM(extraction_error=BedrockLLMError('throttled')))

    result = pipeline.extract('answer', 'user-1')

    assert result.task_ids == [] and result.question_ids == []
    assert result.token_usage.total_tokens == 0


def test_pipeline_skips_items_that_fail_to_persist():
    tasks = FakeObjectStore()
    tasks.fail_all = True
    questions = FakeObjectStore()
    pipeline = _pipeline(FakeLLM(extraction_response=EXTRACTION_JSON), tasks, questions)

    result = pipeline.extract('answer', 'user-1')

    assert result.task_ids == []
    assert len(result.question_ids) == 1


def test_gated_extraction_skips_model_when_not_requested():
    llm = FakeLLM(extraction_response=EXTRACTION_JSON)

    result = _pipeline(llm).extract_if_requested('Summarize the lecture', 'answer', 'user-1')

    assert llm.generate_calls == []
    assert result.task_ids == [] and result.question_ids == []


def test_gated_extraction_only_keeps_requested_kind():
    llm = FakeLLM(extraction_response=EXTRACTION_JSON)

    result = _pipeline(llm).extract_if_requested('Can you quiz me?', 'answer', 'user-1')

    assert result.task_ids == []
    assert len(result.question_ids) == 1
