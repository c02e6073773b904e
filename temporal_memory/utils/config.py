"""
Configuration management for storage, AWS services and memory engine settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class DatabaseConfig:
    """Configuration for the relational memory store."""
    path: str
    busy_timeout_ms: int


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
    index_name: str
    dimension: int


@dataclass
class DecisionConfig:
    """Configuration for the memory update decision engine."""
    top_k: int = 10
    min_similarity: float = 0.5
    context_ring_size: int = 10


@dataclass
class QueueConfig:
    """Configuration for the memory job queue and worker."""
    batch_size: int = 10
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 3600.0
    default_priority: int = 5
    claim_timeout_seconds: float = 900.0


@dataclass
class DecayConfig:
    """Configuration for importance decay and archival."""
    stale_days: int = 30
    daily_factor: float = 0.98
    floor: float = 0.1
    archive_days: int = 180
    archive_importance: float = 0.2
    behavior_stale_days: int = 60
    behavior_floor: float = 0.3


@dataclass
class ContradictionConfig:
    """Configuration for contradiction and evolution detection."""
    min_gap_days: int = 7
    min_confidence: float = 0.8
    sentiment_threshold: float = 0.3
    fact_query_confidence: float = 0.6
    min_category_entries: int = 2
    min_entity_mentions: int = 2


@dataclass
class ConsolidationConfig:
    """Configuration for duplicate memory consolidation."""
    threshold: float = 0.85
    preview_limit: int = 10


@dataclass
class ContextConfig:
    """Configuration for context document assembly."""
    max_entities: int = 50
    max_patterns: int = 10
    max_behaviors: int = 15
    max_entries: int = 20
    max_chars: int = 24000
    pattern_min_confidence: float = 0.6
    behavior_min_confidence: float = 0.5


@dataclass
class CacheConfig:
    """Configuration for the assembled profile cache."""
    ttl_seconds: float = 300.0
    max_entries: int = 256


@dataclass
class ExtractionConfig:
    """Configuration for write-time knowledge extraction."""
    sample_every: int = 3


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
    database: DatabaseConfig
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    decision: DecisionConfig
    queue: QueueConfig
    decay: DecayConfig
    contradiction: ContradictionConfig
    consolidation: ConsolidationConfig
    context: ContextConfig
    cache: CacheConfig
    extraction: ExtractionConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    database_config = DatabaseConfig(path=os.getenv('MEMORY_DB_PATH', 'memory.db'),
                                     busy_timeout_ms=int(os.getenv('MEMORY_DB_BUSY_TIMEOUT_MS', '5000')))

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'temporal_memory'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    decision_config = DecisionConfig(top_k=int(os.getenv('DECISION_TOP_K', '10')),
                                     min_similarity=float(os.getenv('DECISION_MIN_SIMILARITY', '0.5')),
                                     context_ring_size=int(os.getenv('DECISION_CONTEXT_RING_SIZE', '10')))

    queue_config = QueueConfig(batch_size=int(os.getenv('QUEUE_BATCH_SIZE', '10')),
                               max_attempts=int(os.getenv('QUEUE_MAX_ATTEMPTS', '3')),
                               backoff_base_seconds=float(os.getenv('QUEUE_BACKOFF_BASE_SECONDS', '2')),
                               backoff_cap_seconds=float(os.getenv('QUEUE_BACKOFF_CAP_SECONDS', '3600')),
                               default_priority=int(os.getenv('QUEUE_DEFAULT_PRIORITY', '5')),
                               claim_timeout_seconds=float(os.getenv('QUEUE_CLAIM_TIMEOUT_SECONDS', '900')))

    decay_config = DecayConfig(stale_days=int(os.getenv('DECAY_STALE_DAYS', '30')),
                               daily_factor=float(os.getenv('DECAY_DAILY_FACTOR', '0.98')),
                               floor=float(os.getenv('DECAY_FLOOR', '0.1')),
                               archive_days=int(os.getenv('DECAY_ARCHIVE_DAYS', '180')),
                               archive_importance=float(os.getenv('DECAY_ARCHIVE_IMPORTANCE', '0.2')),
                               behavior_stale_days=int(os.getenv('DECAY_BEHAVIOR_STALE_DAYS', '60')),
                               behavior_floor=float(os.getenv('DECAY_BEHAVIOR_FLOOR', '0.3')))

    contradiction_config = ContradictionConfig(min_gap_days=int(os.getenv('CONTRADICTION_MIN_GAP_DAYS', '7')),
                                               min_confidence=float(os.getenv('CONTRADICTION_MIN_CONFIDENCE', '0.8')),
                                               sentiment_threshold=float(os.getenv('CONTRADICTION_SENTIMENT_THRESHOLD', '0.3')))

    consolidation_config = ConsolidationConfig(threshold=float(os.getenv('CONSOLIDATION_THRESHOLD', '0.85')))

    context_config = ContextConfig(max_entities=int(os.getenv('CONTEXT_MAX_ENTITIES', '50')),
                                   max_chars=int(os.getenv('CONTEXT_MAX_CHARS', '24000')))

    cache_config = CacheConfig(ttl_seconds=float(os.getenv('PROFILE_CACHE_TTL_SECONDS', '300')),
                               max_entries=int(os.getenv('PROFILE_CACHE_MAX_ENTRIES', '256')))

    extraction_config = ExtractionConfig(sample_every=int(os.getenv('EXTRACTION_SAMPLE_EVERY', '3')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     database=database_config,
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     decision=decision_config,
                     queue=queue_config,
                     decay=decay_config,
                     contradiction=contradiction_config,
                     consolidation=consolidation_config,
                     context=context_config,
                     cache=cache_config,
                     extraction=extraction_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
