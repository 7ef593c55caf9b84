"""
Error taxonomy for the chat engine.

`NotFoundError`, `UnauthorizedError` and `NoSourcesError` are precondition failures raised before
any provider call. `ProviderFailureError` wraps embedding, search and generation failures.
"""

from typing import Iterable, List


class ChatEngineError(Exception):
    """Base class for chat engine errors."""
    pass


class NotFoundError(ChatEngineError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, missing_ids: Iterable[str]):
        self.entity = entity
        self.missing_ids: List[str] = list(missing_ids)
        super().__init__(f'{entity} not found: {", ".join(self.missing_ids)}')


class UnauthorizedError(ChatEngineError):
    """An entity exists but belongs to another user. Only the entity ID is reported."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f'Unauthorized access to {entity} {entity_id}')


class NoSourcesError(ChatEngineError):
    """The resolved scope contains no addressable audio sources."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f'No audio files found for user {user_id}')


class ProviderFailureError(ChatEngineError):
    """An external provider (embedding, similarity search, generation) failed."""

    def __init__(self, provider: str, cause: Exception):
        self.provider = provider
        self.cause = cause
        super().__init__(f'{provider} failed: {cause}')
