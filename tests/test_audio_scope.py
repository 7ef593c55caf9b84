import pytest

from conftest import FakeAudioFiles
from transcript_rag.models.core import AudioFile
from transcript_rag.services.audio_scope import AudioScopeResolver, normalize_requested_ids
from transcript_rag.services.errors import NoSourcesError, NotFoundError, ProviderFailureError, UnauthorizedError
from transcript_rag.utils.opensearch_client import OpenSearchError


def test_normalize_requested_ids_accepts_single_list_and_none():
    assert normalize_requested_ids(None) == []
    assert normalize_requested_ids('file-1') == ['file-1']
    assert normalize_requested_ids(['file-2', ' file-1 ', 'file-2', '']) == ['file-2', 'file-1']


def test_resolve_without_ids_returns_whole_library(audio_files):
    scope = AudioScopeResolver(audio_files).resolve('user-1')

    assert not scope.explicit
    assert sorted(scope.file_ids) == ['file-1', 'file-2']
    assert scope.primary_file_id is None
    assert sorted(scope.source_identifiers) == ['bucket/a.mp3', 'bucket/b.mp3']


def test_resolve_single_explicit_file_sets_primary(audio_files):
    scope = AudioScopeResolver(audio_files).resolve('user-1', 'file-2')

    assert scope.explicit
    assert scope.file_ids == ['file-2']
    assert scope.primary_file_id == 'file-2'


def test_resolve_multiple_files_keeps_requested_order(audio_files):
    scope = AudioScopeResolver(audio_files).resolve('user-1', ['file-2', 'file-1'])

    assert scope.file_ids == ['file-2', 'file-1']
    assert scope.requested_ids == ('file-2', 'file-1')
    assert scope.primary_file_id is None


def test_resolve_reports_every_missing_id(audio_files):
    with pytest.raises(NotFoundError) as exc_info:
        AudioScopeResolver(audio_files).resolve('user-1', ['file-1', 'nope-1', 'nope-2'])

    assert exc_info.value.missing_ids == ['nope-1', 'nope-2']


def test_resolve_rejects_foreign_file_naming_only_its_id(audio_files):
    with pytest.raises(UnauthorizedError) as exc_info:
        AudioScopeResolver(audio_files).resolve('user-1', ['file-1', 'file-x'])

    assert exc_info.value.entity_id == 'file-x'
    assert 'user-2' not in str(exc_info.value)


def test_resolve_missing_takes_precedence_over_unauthorized(audio_files):
    with pytest.raises(NotFoundError):
        AudioScopeResolver(audio_files).resolve('user-1', ['file-x', 'nope'])


def test_resolve_drops_foreign_files_leaked_by_owner_query():
    leaked = AudioFile(id='file-x', user_id='user-2', bucket='bucket', key='x.mp3')
    store = FakeAudioFiles([AudioFile(id='file-1', user_id='user-1', bucket='bucket', key='a.mp3')], owner_leak=[leaked])

    scope = AudioScopeResolver(store).resolve('user-1')

    assert scope.file_ids == ['file-1']


def test_resolve_raises_no_sources_for_empty_library():
    with pytest.raises(NoSourcesError):
        AudioScopeResolver(FakeAudioFiles()).resolve('user-1')


def test_resolve_raises_no_sources_when_files_lack_bucket_or_key():
    store = FakeAudioFiles([AudioFile(id='file-1', user_id='user-1', bucket='bucket', key=None)])

    with pytest.raises(NoSourcesError):
        AudioScopeResolver(store).resolve('user-1', 'file-1')


def test_resolve_wraps_store_failures():

    class BrokenStore(FakeAudioFiles):

        def find_by_owner(self, user_id, limit=1000):
            raise OpenSearchError('down')

    with pytest.raises(ProviderFailureError):
        AudioScopeResolver(BrokenStore()).resolve('user-1')


def test_authorize_file(audio_files):
    resolver = AudioScopeResolver(audio_files)

    assert resolver.authorize_file('user-1', 'file-1').id == 'file-1'
    with pytest.raises(NotFoundError):
        resolver.authorize_file('user-1', 'nope')
    with pytest.raises(UnauthorizedError):
        resolver.authorize_file('user-1', 'file-x')


@pytest.mark.parametrize('requested', [None, ['file-2', 'file-1']])
def test_resolving_twice_yields_equal_selections(audio_files, requested):
    resolver = AudioScopeResolver(audio_files)

    first = resolver.resolve('user-1', requested)
    second = resolver.resolve('user-1', requested)

    assert first.file_id_set == second.file_id_set
    assert first.source_identifier_set == second.source_identifier_set
    assert first.explicit == second.explicit
