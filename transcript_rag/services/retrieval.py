"""
Security-scoped similarity retrieval over transcript chunks.

Tenant isolation is enforced twice, by two independent code paths: the RetrievalFilter sent to
OpenSearch, and `post_filter_chunks` applied to whatever OpenSearch returns.
"""

from typing import Any, Dict, List, Optional, Sequence

from ..models.core import RetrievalFilter, RetrievedChunk, ScopeSelection
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from .errors import ProviderFailureError

logger = get_logger(__name__)


class RetrievalFilterBuilder:
    """Build the provider-side filter from the user and the explicit scope IDs."""

    def build(self, user_id: str, scope_ids: Sequence[str], scope: Optional[ScopeSelection] = None) -> RetrievalFilter:
        """
        Args:
            user_id: Requesting user; always part of the filter
            scope_ids: Explicitly requested file IDs; empty means the whole library
            scope: Resolved selection used to derive `bucket/key` source identifiers; required with scope_ids

        Returns:
            RetrievalFilter for the similarity-search provider
        """
        if not user_id:
            raise ValueError('user_id is required for retrieval')

        scope_ids = list(scope_ids or [])
        if not scope_ids:
            return RetrievalFilter(user_id=user_id)
        if scope is None:
            raise ValueError('A resolved scope is required to derive source identifiers for explicit file IDs')

        source_ids = [sid for sid in (scope.source_identifier_for(fid) for fid in scope_ids) if sid]

        if len(scope_ids) == 1:
            return RetrievalFilter(user_id=user_id, audio_file_id=scope_ids[0], audio_source_id=source_ids[0] if source_ids else None)

        return RetrievalFilter(user_id=user_id, audio_file_ids=tuple(scope_ids), audio_source_ids=tuple(source_ids))


def post_filter_chunks(chunks: Sequence[RetrievedChunk], user_id: str, scope: ScopeSelection) -> List[RetrievedChunk]:
    """Re-check ownership and scope of provider results.

    A chunk survives only if it is owned by `user_id` and either its file ID or its source
    identifier belongs to the authorized scope.
    """
    owned = []
    for chunk in chunks:
        if chunk.owner_user_id != user_id:
            logger.warning(f'Discarding chunk owned by another user from results for user {user_id}')
            continue
        owned.append(chunk)

    file_ids = scope.file_id_set
    source_ids = scope.source_identifier_set
    in_scope = []
    for chunk in owned:
        if chunk.audio_file_id in file_ids or chunk.audio_source_id in source_ids:
            in_scope.append(chunk)
        else:
            logger.warning(f'Discarding out-of-scope chunk (file {chunk.audio_file_id}) for user {user_id}')

    return in_scope


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_chunk(hit: Dict[str, Any]) -> RetrievedChunk:
    doc = hit.get('document', {})
    return RetrievedChunk(text=doc.get('text') or '',
                          score=float(hit.get('score', 0.0)),
                          owner_user_id=doc.get('user_id'),
                          audio_file_id=doc.get('audio_file_id'),
                          audio_source_id=doc.get('audio_source_id'),
                          start_time_sec=_optional_float(doc.get('start_time_sec')),
                          end_time_sec=_optional_float(doc.get('end_time_sec')),
                          transcript_id=doc.get('transcript_id'))


class ChunkRetriever:
    """Embed a query, search OpenSearch with a scoped filter and post-filter the results."""

    def __init__(self, embed: Optional[BedrockEmbed] = None, opensearch: Optional[OpenSearchClient] = None):
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

    def retrieve(self, query: str, scope: ScopeSelection, retrieval_filter: RetrievalFilter, top_k: int) -> List[RetrievedChunk]:
        """
        Args:
            query: Text to embed as the query vector
            scope: Authorized selection for the post-filter
            retrieval_filter: Provider-side constraints
            top_k: Number of candidates to request

        Returns:
            Post-filtered chunks in provider order

        Raises:
            ProviderFailureError: If embedding or search fails
        """
        try:
            query_vector = self.embed.embed_query(query)
        except BedrockEmbedError as e:
            raise ProviderFailureError('embedding provider', e)

        try:
            hits = self.opensearch.vector_search(query_vector, retrieval_filter, top_k=top_k)
        except OpenSearchError as e:
            raise ProviderFailureError('similarity search', e)

        chunks = post_filter_chunks([to_chunk(hit) for hit in hits], scope.user_id, scope)
        logger.debug(f'Retrieved {len(hits)} candidates, {len(chunks)} passed the post-filter')
        return chunks
