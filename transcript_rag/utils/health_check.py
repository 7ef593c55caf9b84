"""
Health checks for the providers the chat engine depends on.
"""

from typing import Any, Callable, Dict

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _check_service(service: str, detail: Dict[str, Any], check: Callable[[], bool]) -> Dict[str, Any]:
    try:
        return {'healthy': check(), 'service': service, **detail}
    except Exception as e:
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status() -> Dict[str, Any]:
    """Get detailed health status of each provider.

    Returns:
        Dictionary keyed by component with a `healthy` flag and identifying details
    """
    return {
        'bedrock_llm':
            _check_service('Amazon Bedrock LLM', {'model': config.bedrock_llm.model_id},
                   lambda: BedrockLLM(config.bedrock_llm).health_check()),
        'bedrock_embed':
            _check_service('Amazon Bedrock Embed', {'model': config.bedrock_embed.model_id},
                   lambda: BedrockEmbed(config.bedrock_embed).health_check()),
        'opensearch':
            _check_service('Amazon OpenSearch', {'endpoint': config.opensearch.endpoint},
                   lambda: OpenSearchClient(config.opensearch).health_check()),
    }


def check_health() -> bool:
    """Check the health of all providers.

    Returns:
        True if every provider is healthy, False otherwise
    """
    health_status = get_health_status()
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy
