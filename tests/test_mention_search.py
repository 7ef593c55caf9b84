import pytest

from conftest import FakeEmbed, FakeSearch, make_chunk_hit
from transcript_rag.models.core import RetrievedChunk
from transcript_rag.services.audio_scope import AudioScopeResolver
from transcript_rag.services.errors import UnauthorizedError
from transcript_rag.services.mention_search import MentionSearchEngine, rank_mentions
from transcript_rag.services.retrieval import ChunkRetriever, RetrievalFilterBuilder


def _chunk(text, score, start=None):
    return RetrievedChunk(text=text, score=score, owner_user_id='user-1', audio_file_id='file-1', start_time_sec=start, end_time_sec=None)


def _engine(audio_files, hits):
    search = FakeSearch(hits)
    engine = MentionSearchEngine(AudioScopeResolver(audio_files), ChunkRetriever(FakeEmbed(), search), RetrievalFilterBuilder(),
                                 similarity_threshold=0.3, dedup_window_sec=1.0, default_top_k=50)
    return engine, search


def test_threshold_is_inclusive():
    mentions = rank_mentions([_chunk('below', 0.29, 1), _chunk('at', 0.30, 2), _chunk('above', 0.8, 3)], 0.3, 1.0)

    assert [m.quote for m in mentions] == ['above', 'at']


def test_sort_is_descending_and_stable_for_ties():
    mentions = rank_mentions([_chunk('first', 0.5, 10), _chunk('top', 0.9, 20), _chunk('second', 0.5, 30)], 0.3, 1.0)

    assert [m.quote for m in mentions] == ['top', 'first', 'second']


def test_duplicates_within_window_are_collapsed():
    mentions = rank_mentions([_chunk('same words', 0.9, 10.0), _chunk('same words', 0.8, 10.5)], 0.3, 1.0)

    assert len(mentions) == 1
    assert mentions[0].start_time_sec == 10.0


def test_same_quote_outside_window_is_kept():
    mentions = rank_mentions([_chunk('same words', 0.9, 10.0), _chunk('same words', 0.8, 11.5)], 0.3, 1.0)

    assert len(mentions) == 2


def test_different_quotes_at_same_time_are_kept():
    mentions = rank_mentions([_chunk('one thing', 0.9, 10.0), _chunk('another thing', 0.8, 10.0)], 0.3, 1.0)

    assert len(mentions) == 2


def test_mentions_carry_formatted_timestamp_and_trimmed_quote():
    mention = rank_mentions([_chunk('  hello there  ', 0.7, 125.9)], 0.3, 1.0)[0]

    assert mention.timestamp == '2:05'
    assert mention.quote == 'hello there'


def test_find_mentions_count_matches_mentions(audio_files):
    engine, _ = _engine(audio_files, [make_chunk_hit('budget review', 0.8, start=4), make_chunk_hit('weather', 0.1, start=9)])

    result = engine.find_mentions('user-1', 'budget', 'file-1')

    assert result.term == 'budget'
    assert result.count == len(result.mentions) == 1
    assert result.to_dict()['mentions'][0]['timestamp'] == '0:04'


def test_find_mentions_match_all_ignores_explicit_list(audio_files):
    engine, search = _engine(audio_files, [
        make_chunk_hit('in file one', 0.8, start=1),
        make_chunk_hit('in file two', 0.7, audio_file_id='file-2', audio_source_id='bucket/b.mp3', start=2),
    ])

    result = engine.find_mentions('user-1', 'file', ['file-1'], match_all=True)

    assert not search.filters[0].has_source_constraint
    assert [m.audio_file_id for m in result.mentions] == ['file-1', 'file-2']


def test_find_mentions_match_all_skips_authorization_of_ignored_ids(audio_files):
    engine, _ = _engine(audio_files, [])

    result = engine.find_mentions('user-1', 'term', ['file-x'], match_all=True)

    assert result.count == 0


def test_find_mentions_rejects_foreign_file(audio_files):
    engine, search = _engine(audio_files, [])

    with pytest.raises(UnauthorizedError):
        engine.find_mentions('user-1', 'term', 'file-x')
    assert search.filters == []


def test_find_mentions_drops_foreign_chunks(audio_files):
    engine, _ = _engine(audio_files, [make_chunk_hit('secret', 0.95, user_id='user-2', audio_file_id='file-x', audio_source_id='bucket/x.mp3')])

    assert engine.find_mentions('user-1', 'secret').count == 0


def test_find_mentions_requires_term(audio_files):
    engine, _ = _engine(audio_files, [])

    with pytest.raises(ValueError):
        engine.find_mentions('user-1', '   ')


def test_explicit_zero_top_k_is_not_replaced_by_default(audio_files):
    engine, search = _engine(audio_files, [])

    engine.find_mentions('user-1', 'term', 'file-1', top_k=0)

    assert search.top_ks == [0]
