"""
Mention search: ranked, deduplicated occurrences of a term across a user's transcripts.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..models.core import Mention, MentionSearchResult, RetrievedChunk
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import format_offset
from .audio_scope import AudioScopeResolver, RequestedIds
from .retrieval import ChunkRetriever, RetrievalFilterBuilder

logger = get_logger(__name__)


@dataclass(frozen=True)
class _RankedMention:
    mention: Mention
    score: float


def rank_mentions(chunks: Sequence[RetrievedChunk], similarity_threshold: float, dedup_window_sec: float) -> List[Mention]:
    """Threshold, sort and deduplicate post-filtered chunks into mentions.

    Candidates below the threshold are dropped (boundary inclusive), as are blank quotes. The sort
    is stable, so equal scores keep provider order. Two mentions are duplicates when their start
    times differ by less than `dedup_window_sec` and their trimmed quotes are identical; the
    higher-ranked one is kept.
    """
    ranked = []
    for chunk in chunks:
        if chunk.score < similarity_threshold:
            continue
        quote = (chunk.text or '').strip()
        if not quote:
            continue
        ranked.append(
            _RankedMention(mention=Mention(timestamp=format_offset(chunk.start_time_sec),
                                           quote=quote,
                                           audio_file_id=chunk.audio_file_id,
                                           start_time_sec=chunk.start_time_sec,
                                           end_time_sec=chunk.end_time_sec),
                           score=chunk.score))

    ranked.sort(key=lambda r: r.score, reverse=True)

    kept: List[Mention] = []
    for candidate in ranked:
        if any(_is_duplicate(candidate.mention, existing, dedup_window_sec) for existing in kept):
            continue
        kept.append(candidate.mention)
    return kept


def _is_duplicate(a: Mention, b: Mention, window_sec: float) -> bool:
    if a.quote != b.quote:
        return False
    a_start = a.start_time_sec if a.start_time_sec is not None else 0.0
    b_start = b.start_time_sec if b.start_time_sec is not None else 0.0
    return abs(a_start - b_start) < window_sec


class MentionSearchEngine:
    """Find where a term is mentioned in the user's transcripts."""

    def __init__(self,
                 resolver: Optional[AudioScopeResolver] = None,
                 retriever: Optional[ChunkRetriever] = None,
                 filter_builder: Optional[RetrievalFilterBuilder] = None,
                 similarity_threshold: Optional[float] = None,
                 dedup_window_sec: Optional[float] = None,
                 default_top_k: Optional[int] = None):
        self.resolver = resolver or AudioScopeResolver()
        self.retriever = retriever or ChunkRetriever()
        self.filter_builder = filter_builder or RetrievalFilterBuilder()
        self.similarity_threshold = config.mention.similarity_threshold if similarity_threshold is None else similarity_threshold
        self.dedup_window_sec = config.mention.dedup_window_sec if dedup_window_sec is None else dedup_window_sec
        self.default_top_k = config.mention.top_k if default_top_k is None else default_top_k

    def find_mentions(self,
                      user_id: str,
                      term: str,
                      audio_file_ids: RequestedIds = None,
                      top_k: Optional[int] = None,
                      match_all: bool = False) -> MentionSearchResult:
        """
        Args:
            user_id: Requesting user
            term: Term to look for
            audio_file_ids: Files to search; ignored when `match_all` is set
            top_k: Number of candidates to request from the search provider
            match_all: Search the whole library regardless of `audio_file_ids`

        Returns:
            MentionSearchResult with `count == len(mentions)`

        Raises:
            ValueError: If the term is blank
            NotFoundError, UnauthorizedError, NoSourcesError: On scope precondition failures
            ProviderFailureError: If embedding or search fails
        """
        term = (term or '').strip()
        if not term:
            raise ValueError('term is required')

        scope = self.resolver.resolve(user_id, None if match_all else audio_file_ids)
        scope_ids = [] if match_all else list(scope.requested_ids)
        retrieval_filter = self.filter_builder.build(user_id, scope_ids, scope)

        chunks = self.retriever.retrieve(term, scope, retrieval_filter, self.default_top_k if top_k is None else top_k)
        mentions = rank_mentions(chunks, self.similarity_threshold, self.dedup_window_sec)

        logger.debug(f"Mention search for '{term}' kept {len(mentions)} of {len(chunks)} candidate(s)")
        return MentionSearchResult(term=term, count=len(mentions), mentions=mentions)
