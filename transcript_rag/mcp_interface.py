"""
MCP Interface Layer using fastmcp for chat and mention search over audio transcripts.
"""
import os
import sys
from typing import Any, Dict, List, Optional, Union

from fastmcp import FastMCP

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from transcript_rag.services.chat_service import ChatService  # noqa: E402
from transcript_rag.services.errors import ChatEngineError  # noqa: E402
from transcript_rag.services.repositories import bootstrap_indexes  # noqa: E402
from transcript_rag.utils.config import config  # noqa: E402
from transcript_rag.utils.health_check import get_health_status  # noqa: E402
from transcript_rag.utils.logging_config import get_logger  # noqa: E402
from transcript_rag.utils.opensearch_client import OpenSearchClient  # noqa: E402

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Transcript Chat')
chat_service = ChatService()


@mcp.tool()
def chat_with_audio(user_id: str,
                    message: str,
                    audio_file_ids: Union[str, List[str], None] = None,
                    top_k: int = 10,
                    display_name: Optional[str] = None) -> Dict[str, Any]:
    """Ask a question about the user's audio transcripts.

    Args:
        user_id: User ID
        message: The question
        audio_file_ids: One audio file ID, several, or omitted for the whole library
        top_k: Number of transcript chunks to ground the answer on (default: 10)
        display_name: Optional name used to personalize the answer

    Returns:
        Dictionary with the answer, persisted turn IDs, extracted task/question IDs and token usage

    Raises:
        Exception: If the chat turn fails
    """

    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        stream = chat_service.chat(user_id, message, audio_file_ids, top_k, display_name)
        result = stream.collect()

        logger.debug(f'MCP chat answered {len(result.answer)} chars for user {user_id}')
        return {
            'answer': result.answer,
            'user_turn_id': result.user_turn_id,
            'assistant_turn_id': result.assistant_turn_id,
            'task_ids': result.task_ids,
            'question_ids': result.question_ids,
            'token_usage': result.token_usage.to_dict() if result.token_usage else None
        }

    except ChatEngineError as e:
        logger.error(f'Chat error in MCP chat: {e}')
        raise Exception(f'Chat failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP chat: {e}')
        raise Exception(f'Chat failed: {e}')


@mcp.tool()
def find_mentions(user_id: str,
                  term: str,
                  audio_file_ids: Union[str, List[str], None] = None,
                  top_k: int = 50,
                  match_all: bool = False) -> Dict[str, Any]:
    """Find where a term is mentioned in the user's audio transcripts.

    Args:
        user_id: User ID
        term: Term to look for
        audio_file_ids: One audio file ID, several, or omitted for the whole library
        top_k: Number of candidates to consider (default: 50)
        match_all: Search the whole library even if audio_file_ids is given

    Returns:
        Dictionary with the term, the mention count and the mentions (timestamp, quote, audio file)

    Raises:
        Exception: If the search fails
    """

    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        result = chat_service.find_mentions(user_id, term, audio_file_ids, top_k, match_all)

        logger.debug(f'MCP mention search returned {result.count} mentions for user {user_id}')
        return result.to_dict()

    except ChatEngineError as e:
        logger.error(f'Mention search error in MCP: {e}')
        raise Exception(f'Mention search failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP mention search: {e}')
        raise Exception(f'Mention search failed: {e}')


@mcp.tool()
def get_conversation(user_id: str, audio_file_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Get the user's recent chat turns with their linked tasks and questions.

    Args:
        user_id: User ID
        audio_file_id: Restrict to the conversation about one audio file
        limit: Maximum number of turns (default: 50)

    Returns:
        List of turns in chronological order

    Raises:
        Exception: If the conversation cannot be read
    """

    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        entries = chat_service.get_conversation(user_id, audio_file_id, limit)

        return [{
            'id': entry.turn.id,
            'role': entry.turn.role,
            'content': entry.turn.content,
            'created_at': entry.turn.created_at.isoformat() if entry.turn.created_at else None,
            'audio_file_id': entry.turn.audio_file_id,
            'tasks': [{'id': t.id, 'description': t.description, 'priority': t.priority, 'status': t.status}
                      for t in entry.tasks],
            'questions': [{'id': q.id, 'type': q.type, 'question': q.question} for q in entry.questions]
        } for entry in entries]

    except ChatEngineError as e:
        logger.error(f'Conversation error in MCP: {e}')
        raise Exception(f'Get conversation failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP get conversation: {e}')
        raise Exception(f'Get conversation failed: {e}')


@mcp.tool()
def health() -> Dict[str, Any]:
    """Report the health of the generation, embedding and search providers."""
    return get_health_status()


if __name__ == '__main__':
    bootstrap_indexes(OpenSearchClient(config.opensearch))

    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
