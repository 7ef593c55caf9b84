"""
Audio scope resolution: which audio files a request may read from.
"""

from typing import List, Optional, Sequence, Union

from ..models.core import AudioFile, ScopeSelection
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from .errors import NoSourcesError, NotFoundError, ProviderFailureError, UnauthorizedError
from .repositories import AudioFileRepository

logger = get_logger(__name__)

RequestedIds = Union[str, Sequence[str], None]


def normalize_requested_ids(requested_ids: RequestedIds) -> List[str]:
    """Accept a single ID, a list of IDs or nothing; drop blanks and duplicates, keep order."""
    if requested_ids is None:
        return []
    if isinstance(requested_ids, str):
        requested_ids = [requested_ids]

    seen = set()
    ids = []
    for file_id in requested_ids:
        file_id = (file_id or '').strip()
        if file_id and file_id not in seen:
            seen.add(file_id)
            ids.append(file_id)
    return ids


class AudioScopeResolver:
    """Resolve and authorize the audio files targeted by a request."""

    def __init__(self, audio_files: Optional[AudioFileRepository] = None):
        self.audio_files = audio_files or AudioFileRepository()

    def resolve(self, user_id: str, requested_ids: RequestedIds = None) -> ScopeSelection:
        """Resolve the request scope for a user.

        Args:
            user_id: Requesting user
            requested_ids: One file ID, several, or None for the whole library

        Returns:
            ScopeSelection whose every file is owned by `user_id`

        Raises:
            NotFoundError: If any requested file does not exist (lists every missing ID)
            UnauthorizedError: If a requested file belongs to another user
            NoSourcesError: If the resolved files carry no `bucket/key` source identifier
            ProviderFailureError: If the file store cannot be read
        """
        if not user_id:
            raise ValueError('user_id is required')

        ids = normalize_requested_ids(requested_ids)

        try:
            if ids:
                files = self.audio_files.find_by_ids(ids)
            else:
                files = self.audio_files.find_by_owner(user_id)
        except OpenSearchError as e:
            raise ProviderFailureError('audio file store', e)

        if ids:
            by_id = {f.id: f for f in files}
            missing = [file_id for file_id in ids if file_id not in by_id]
            if missing:
                logger.warning(f'User {user_id} requested {len(missing)} unknown audio file(s)')
                raise NotFoundError('Audio file', missing)

            for file_id in ids:
                if by_id[file_id].user_id != user_id:
                    logger.warning(f'User {user_id} requested audio file {file_id} owned by another user')
                    raise UnauthorizedError('audio file', file_id)

            # Requested order, not store order
            files = [by_id[file_id] for file_id in ids]
        else:
            # Owner queries are already tenant-filtered, but never trust the store for isolation
            files = [f for f in files if f.user_id == user_id]

        selection = ScopeSelection(user_id=user_id, files=tuple(files), explicit=bool(ids), requested_ids=tuple(ids))

        if not selection.source_identifiers:
            raise NoSourcesError(user_id)

        logger.debug(f'Resolved scope for user {user_id}: {len(selection.files)} file(s), explicit={selection.explicit}')
        return selection

    def authorize_file(self, user_id: str, file_id: str) -> AudioFile:
        """Check that a single file exists and belongs to the user, without requiring a source identifier."""
        try:
            files = self.audio_files.find_by_ids([file_id])
        except OpenSearchError as e:
            raise ProviderFailureError('audio file store', e)

        audio_file = next((f for f in files if f.id == file_id), None)
        if audio_file is None:
            raise NotFoundError('Audio file', [file_id])
        if audio_file.user_id != user_id:
            raise UnauthorizedError('audio file', file_id)
        return audio_file
