"""
OpenSearch client wrapper for transcript vector search and document storage.
"""

import time
from typing import Any, Dict, List, Optional, Sequence

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import RetrievalFilter
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

INDEX_CHUNK = 'chunk'
INDEX_AUDIO_FILE = 'audio_file'
INDEX_CHAT_MESSAGE = 'chat_message'
INDEX_TASK = 'task'
INDEX_QUESTION = 'question'

_KEYWORD = {'type': 'keyword'}
_TEXT = {'type': 'text'}
_DATE = {'type': 'date'}
_FLOAT = {'type': 'float'}


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def index_mappings(index_type: str, dimension: int) -> Dict[str, Any]:
    """Return the index body for one of the known index types."""
    if index_type == INDEX_CHUNK:
        return {
            'mappings': {
                'properties': {
                    'id': _KEYWORD,
                    'user_id': _KEYWORD,
                    'audio_file_id': _KEYWORD,
                    'audio_source_id': _KEYWORD,
                    'transcript_id': _KEYWORD,
                    'text': _TEXT,
                    'start_time_sec': _FLOAT,
                    'end_time_sec': _FLOAT,
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    properties = {
        INDEX_AUDIO_FILE: {
            'id': _KEYWORD,
            'user_id': _KEYWORD,
            'bucket': _KEYWORD,
            'key': _KEYWORD,
            'filename': _TEXT,
            'created_at': _DATE
        },
        INDEX_CHAT_MESSAGE: {
            'id': _KEYWORD,
            'user_id': _KEYWORD,
            'audio_file_id': _KEYWORD,
            'role': _KEYWORD,
            'content': _TEXT,
            'task_ids': _KEYWORD,
            'question_ids': _KEYWORD,
            'token_usage': {
                'type': 'object'
            },
            'created_at': _DATE
        },
        INDEX_TASK: {
            'id': _KEYWORD,
            'user_id': _KEYWORD,
            'audio_file_id': _KEYWORD,
            'description': _TEXT,
            'due_date': _DATE,
            'priority': _KEYWORD,
            'location': _TEXT,
            'status': _KEYWORD,
            'created_at': _DATE,
            'updated_at': _DATE
        },
        INDEX_QUESTION: {
            'id': _KEYWORD,
            'user_id': _KEYWORD,
            'audio_file_id': _KEYWORD,
            'type': _KEYWORD,
            'question': _TEXT,
            'options': {
                'type': 'object'
            },
            'correct_answer': _TEXT,
            'explanation': _TEXT,
            'created_at': _DATE,
            'updated_at': _DATE
        },
    }
    if index_type not in properties:
        raise OpenSearchError(f'Unknown index type: {index_type}')
    return {'mappings': {'properties': properties[index_type]}}


def filter_clauses(retrieval_filter: RetrievalFilter) -> List[Dict[str, Any]]:
    """Translate a RetrievalFilter into bool filter clauses.

    Chunks are tagged either by file ID or by `bucket/key` source ID, so the two addressing
    schemes are alternatives: a chunk matches when either one is in scope.
    """
    if not retrieval_filter.user_id:
        raise OpenSearchError('Refusing to search without a user_id filter')

    clauses: List[Dict[str, Any]] = [{'term': {'user_id': retrieval_filter.user_id}}]

    alternatives = []
    if retrieval_filter.audio_file_id:
        alternatives.append({'term': {'audio_file_id': retrieval_filter.audio_file_id}})
    if retrieval_filter.audio_source_id:
        alternatives.append({'term': {'audio_source_id': retrieval_filter.audio_source_id}})
    if retrieval_filter.audio_file_ids:
        alternatives.append({'terms': {'audio_file_id': list(retrieval_filter.audio_file_ids)}})
    if retrieval_filter.audio_source_ids:
        alternatives.append({'terms': {'audio_source_id': list(retrieval_filter.audio_source_ids)}})

    if alternatives:
        clauses.append({'bool': {'should': alternatives, 'minimum_should_match': 1}})
    return clauses


def knn_score_to_cosine(score: float) -> float:
    """Convert an OpenSearch cosinesimil kNN score, (1 + cos) / 2, back to cosine similarity."""
    return 2.0 * float(score) - 1.0


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create an index with its mapping if it doesn't exist.

        Args:
            index_type: One of the known index types (chunk, audio_file, chat_message, task, question)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.config.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=index_mappings(index_type, self.config.dimension))
            logger.info(f'Created index {index_name}')
            if not response.get('acknowledged', False):
                return 'failed'
            if self.config.index_sync_wait > 0:
                logger.info(f'Waiting {self.config.index_sync_wait}s for index {index_name} sync-up...')
                time.sleep(self.config.index_sync_wait)
            return 'created'

        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self, document: Dict[str, Any], index_type: str, doc_id: Optional[str] = None) -> bool:
        """
        Index a document.

        Args:
            document: Document to index
            index_type: Type of index
            doc_id: Explicit document ID (generated by OpenSearch if None)

        Returns:
            True if indexing was successful

        Raises:
            OpenSearchError: If the request fails
        """
        index_name = self.config.index_name(index_type)

        try:
            kwargs = {'index': index_name, 'body': document}
            if doc_id:
                kwargs['id'] = doc_id
            response = self.client.index(**kwargs)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def vector_search(self,
                      query_vector: List[float],
                      retrieval_filter: RetrievalFilter,
                      top_k: int = 10,
                      index_type: str = INDEX_CHUNK) -> List[Dict[str, Any]]:
        """
        Perform a filtered kNN similarity search.

        Args:
            query_vector: Query vector for similarity search
            retrieval_filter: Tenant and scope constraints; user_id is mandatory
            top_k: Number of results to return
            index_type: Type of index

        Returns:
            List of {'id', 'score', 'document'} dicts, score as cosine similarity, in provider order
        """
        index_name = self.config.index_name(index_type)

        try:
            search_body = {
                'size': top_k,
                'query': {
                    'bool': {
                        'must': [{
                            'knn': {
                                'embedding': {
                                    'vector': query_vector,
                                    'k': top_k
                                }
                            }
                        }],
                        'filter': filter_clauses(retrieval_filter)
                    }
                },
                '_source': {
                    'excludes': ['embedding']  # Don't return embedding in results
                }
            }

            response = self.client.search(index=index_name, body=search_body)

            results = [{
                'id': hit['_id'],
                'score': knn_score_to_cosine(hit['_score']),
                'document': hit['_source']
            } for hit in response['hits']['hits']]

            logger.debug(f'Vector search returned {len(results)} results for user {retrieval_filter.user_id}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

    def search_documents(self,
                         index_type: str,
                         terms: Dict[str, Any],
                         size: int = 100,
                         sort_field: Optional[str] = None,
                         descending: bool = True) -> List[Dict[str, Any]]:
        """
        Fetch documents matching exact field values.

        Args:
            index_type: Type of index
            terms: Field -> value (or list of values) exact-match constraints
            size: Maximum number of documents
            sort_field: Optional field to sort on
            descending: Sort direction

        Returns:
            List of document sources
        """
        index_name = self.config.index_name(index_type)

        clauses = []
        for field_name, value in terms.items():
            if isinstance(value, (list, tuple, set)):
                clauses.append({'terms': {field_name: list(value)}})
            else:
                clauses.append({'term': {field_name: value}})

        search_body: Dict[str, Any] = {'size': size, 'query': {'bool': {'filter': clauses}}}
        if sort_field:
            search_body['sort'] = [{sort_field: {'order': 'desc' if descending else 'asc'}}]

        try:
            response = self.client.search(index=index_name, body=search_body)
            return [hit['_source'] for hit in response['hits']['hits']]

        except OpenSearchNotFoundError:
            logger.warning(f'Index {index_name} not found, returning no documents')
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Document search failed: {e}')

    def get_documents(self, index_type: str, ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Fetch documents by their `id` field, in no particular order."""
        if not ids:
            return []
        return self.search_documents(index_type, {'id': list(ids)}, size=len(ids))

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.config.index_name(INDEX_CHUNK))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
