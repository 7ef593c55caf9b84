from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from transcript_rag.utils.bedrock_llm import BedrockLLM, BedrockLLMError, to_bedrock_request
from transcript_rag.utils.config import BedrockLLMConfig


def _config(retry_attempts=2):
    return BedrockLLMConfig(region='us-east-1',
                            model_id='anthropic.claude-3-haiku-20240307-v1:0',
                            max_tokens=256,
                            temperature=0.7,
                            extraction_temperature=0.3,
                            retry_attempts=retry_attempts,
                            retry_delay=0.0)


def _client_error(code='ThrottlingException'):
    return ClientError({'Error': {'Code': code, 'Message': 'slow down'}}, 'ConverseStream')


@pytest.fixture
def runtime():
    with patch('transcript_rag.utils.bedrock_llm.boto3.client') as client_factory:
        client = MagicMock()
        client_factory.return_value = client
        yield client


def _events(*texts, usage=None):
    events = [{'messageStart': {'role': 'assistant'}}]
    events.extend({'contentBlockDelta': {'delta': {'text': t}}} for t in texts)
    events.append({'messageStop': {'stopReason': 'end_turn'}})
    if usage:
        events.append({'metadata': {'usage': {'inputTokens': usage[0], 'outputTokens': usage[1]}}})
    return events


def test_to_bedrock_request_moves_system_and_merges_roles():
    system, messages = to_bedrock_request([
        {'role': 'system', 'content': 'be brief'},
        {'role': 'assistant', 'content': 'orphan greeting'},
        {'role': 'user', 'content': 'first'},
        {'role': 'user', 'content': 'second'},
        {'role': 'assistant', 'content': '  '},
        {'role': 'assistant', 'content': 'reply'},
    ])

    assert system == [{'text': 'be brief'}]
    assert messages == [
        {'role': 'user', 'content': [{'text': 'first\n\nsecond'}]},
        {'role': 'assistant', 'content': [{'text': 'reply'}]},
    ]


def test_stream_response_yields_text_deltas(runtime):
    runtime.converse_stream.return_value = {'stream': _events('Hel', 'lo', usage=(10, 2))}

    fragments = list(BedrockLLM(_config()).stream_response([{'role': 'user', 'content': 'hi'}]))

    assert fragments == ['Hel', 'lo']
    request = runtime.converse_stream.call_args.kwargs
    assert request['inferenceConfig']['maxTokens'] == 256
    assert 'system' not in request


def test_generate_response_returns_text_and_usage(runtime):
    runtime.converse_stream.return_value = {'stream': _events('{"tasks": []}', usage=(50, 7))}

    text, usage = BedrockLLM(_config()).generate_response([{'role': 'user', 'content': 'extract'}, {'role': 'assistant', 'content': '```json'}],
                                                          temperature=0.3,
                                                          stop_sequences=['```'])

    assert text == '{"tasks": []}'
    assert usage.prompt_tokens == 50 and usage.completion_tokens == 7
    request = runtime.converse_stream.call_args.kwargs
    assert request['inferenceConfig']['stopSequences'] == ['```']
    assert request['messages'][-1]['role'] == 'assistant'


def test_in_band_stream_error_raises(runtime):
    runtime.converse_stream.return_value = {'stream': [{'contentBlockDelta': {'delta': {'text': 'par'}}}, {'modelStreamErrorException': {'message': 'boom'}}]}

    fragments = []
    with pytest.raises(BedrockLLMError):
        for fragment in BedrockLLM(_config()).stream_response([{'role': 'user', 'content': 'hi'}]):
            fragments.append(fragment)
    assert fragments == ['par']


@patch('transcript_rag.utils.bedrock_llm.time.sleep')
def test_open_stream_retries_then_succeeds(sleep, runtime):
    runtime.converse_stream.side_effect = [_client_error(), {'stream': _events('ok')}]

    assert list(BedrockLLM(_config()).stream_response([{'role': 'user', 'content': 'hi'}])) == ['ok']
    assert runtime.converse_stream.call_count == 2
    assert sleep.call_count == 1


@patch('transcript_rag.utils.bedrock_llm.time.sleep')
def test_open_stream_gives_up_after_retries(sleep, runtime):
    runtime.converse_stream.side_effect = _client_error()

    with pytest.raises(BedrockLLMError):
        list(BedrockLLM(_config(retry_attempts=3)).stream_response([{'role': 'user', 'content': 'hi'}]))
    assert runtime.converse_stream.call_count == 3


def test_no_user_message_is_rejected(runtime):
    with pytest.raises(BedrockLLMError):
        list(BedrockLLM(_config()).stream_response([{'role': 'system', 'content': 'only system'}]))
    runtime.converse_stream.assert_not_called()
