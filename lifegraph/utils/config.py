"""
Configuration management for the language-model service, graph storage and engine budgets.
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
    retry_attempts: int
    retry_delay: float


@dataclass
class ExtractionConfig:
    """Gates applied by the extraction pipeline."""
    min_turn_chars: int = 15
    confidence_threshold: float = 0.6
    max_existing_entities: int = 30
    max_existing_memories: int = 20
    memory_similarity_threshold: float = 0.8
    min_thread_transcript_chars: int = 100
    max_thread_transcript_chars: int = 10000
    document_temperature: float = 0.3


@dataclass
class ContextConfig:
    """Token budgets for the context compactor.

    Token counts are estimates (chars / chars_per_token), not tokenizer output.
    """
    max_context_tokens: int = 150000
    target_context_tokens: int = 100000
    min_recent_messages: int = 4
    summary_threshold: int = 10
    chars_per_token: int = 4
    message_overhead_tokens: int = 10
    entity_overhead_tokens: int = 20
    summary_max_tokens: int = 300
    summary_temperature: float = 0.3
    chat_max_tokens: int = 1024
    chat_temperature: float = 0.7


@dataclass
class RankingConfig:
    """Configuration for entity and memory ranking."""
    max_entities: int = 15
    max_memories: int = 5
    recency_window_days: int = 30
    recency_floor: float = 0.3
    min_memory_relevance: float = 0.2


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch notes index."""
    endpoint: str
    port: int
    region: str
    index_name: str
    service: str


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
    extraction: ExtractionConfig
    context: ContextConfig
    ranking: RankingConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Extraction gates
    extraction_config = ExtractionConfig(
        min_turn_chars=int(os.getenv('EXTRACTION_MIN_TURN_CHARS', '15')),
        confidence_threshold=float(os.getenv('EXTRACTION_CONFIDENCE_THRESHOLD', '0.6')),
        max_existing_entities=int(os.getenv('EXTRACTION_MAX_EXISTING_ENTITIES', '30')),
        max_existing_memories=int(os.getenv('EXTRACTION_MAX_EXISTING_MEMORIES', '20')),
        memory_similarity_threshold=float(os.getenv('EXTRACTION_MEMORY_SIMILARITY', '0.8')),
        min_thread_transcript_chars=int(os.getenv('EXTRACTION_MIN_THREAD_CHARS', '100')),
        max_thread_transcript_chars=int(os.getenv('EXTRACTION_MAX_THREAD_CHARS', '10000')),
        document_temperature=float(os.getenv('EXTRACTION_DOCUMENT_TEMPERATURE', '0.3')))

    # Context window budgets
    context_config = ContextConfig(max_context_tokens=int(os.getenv('CONTEXT_MAX_TOKENS', '150000')),
                                   target_context_tokens=int(os.getenv('CONTEXT_TARGET_TOKENS', '100000')),
                                   min_recent_messages=int(os.getenv('CONTEXT_MIN_RECENT_MESSAGES', '4')),
                                   summary_threshold=int(os.getenv('CONTEXT_SUMMARY_THRESHOLD', '10')),
                                   chars_per_token=int(os.getenv('CONTEXT_CHARS_PER_TOKEN', '4')),
                                   summary_max_tokens=int(os.getenv('CONTEXT_SUMMARY_MAX_TOKENS', '300')),
                                   chat_max_tokens=int(os.getenv('CHAT_MAX_TOKENS', '1024')),
                                   chat_temperature=float(os.getenv('CHAT_TEMPERATURE', '0.7')))

    # Ranking
    ranking_config = RankingConfig(max_entities=int(os.getenv('RANKING_MAX_ENTITIES', '15')),
                                   max_memories=int(os.getenv('RANKING_MAX_MEMORIES', '5')),
                                   recency_window_days=int(os.getenv('RANKING_RECENCY_WINDOW_DAYS', '30')),
                                   recency_floor=float(os.getenv('RANKING_RECENCY_FLOOR', '0.3')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Reference notes search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'reference_notes'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     extraction=extraction_config,
                     context=context_config,
                     ranking=ranking_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
