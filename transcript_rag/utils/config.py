"""
Configuration management for AWS services and chat engine settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    extraction_temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str
    index_prefix: str
    dimension: int
    index_sync_wait: float

    def index_name(self, index_type: str) -> str:
        return f'{self.index_prefix}_{index_type}'


@dataclass
class ChatConfig:
    """Configuration for the retrieval-augmented chat pipeline."""
    history_limit: int
    top_k: int
    extraction_gating: str  # keyword | always


@dataclass
class MentionConfig:
    """Configuration for mention search.

    Threshold applies to cosine similarity (inclusive); duplicates are identical quotes whose
    start times differ by less than the window.
    """
    similarity_threshold: float
    dedup_window_sec: float
    top_k: int


@dataclass
class TokenizerConfig:
    """Configuration for local token accounting."""
    encoding: str


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    chat: ChatConfig
    mention: MentionConfig
    tokenizer: TokenizerConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          extraction_temperature=float(os.getenv('BEDROCK_EXTRACTION_TEMPERATURE', '0.3')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search and document storage configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'transcript_rag'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         index_sync_wait=float(os.getenv('OPENSEARCH_INDEX_SYNC_WAIT', '15')))

    chat_config = ChatConfig(history_limit=int(os.getenv('CHAT_HISTORY_LIMIT', '10')),
                             top_k=int(os.getenv('CHAT_TOP_K', '10')),
                             extraction_gating=os.getenv('EXTRACTION_GATING', 'keyword').lower())

    mention_config = MentionConfig(similarity_threshold=float(os.getenv('MENTION_SIMILARITY_THRESHOLD', '0.3')),
                                   dedup_window_sec=float(os.getenv('MENTION_DEDUP_WINDOW_SEC', '1.0')),
                                   top_k=int(os.getenv('MENTION_TOP_K', '50')))

    tokenizer_config = TokenizerConfig(encoding=os.getenv('TOKENIZER_ENCODING', 'cl100k_base'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     chat=chat_config,
                     mention=mention_config,
                     tokenizer=tokenizer_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
