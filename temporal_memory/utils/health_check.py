"""
Health check utilities for the application.
"""

from typing import Any, Dict

from .config import AppConfig
from .logging_config import get_logger

logger = get_logger(__name__)


async def get_health_status(app_config: AppConfig, db, llm, embedder, vector_index) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        app_config: Application configuration, for reporting models and endpoints
        db: Relational store
        llm: Reasoning service client
        embedder: Embedding service client
        vector_index: Similarity index client

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check the relational store
    try:
        health_status['database'] = {
            'healthy': await db.health_check(),
            'service': 'SQLite (aiosqlite)',
            'path': app_config.database.path
        }
    except Exception as e:
        health_status['database'] = {'healthy': False, 'service': 'SQLite (aiosqlite)', 'error': str(e)}

    # Check Bedrock LLM
    try:
        health_status['bedrock_llm'] = {
            'healthy': await llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock Embed
    try:
        health_status['bedrock_embed'] = {
            'healthy': await embedder.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check OpenSearch
    try:
        health_status['opensearch'] = {
            'healthy': await vector_index.health_check(),
            'service': 'Amazon OpenSearch',
            'endpoint': app_config.opensearch.endpoint
        }
    except Exception as e:
        health_status['opensearch'] = {'healthy': False, 'service': 'Amazon OpenSearch', 'error': str(e)}

    return health_status


async def check_health(app_config: AppConfig, db, llm, embedder, vector_index) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = await get_health_status(app_config, db, llm, embedder, vector_index)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy


def get_system_info(app_config: AppConfig) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'TemporalMemory',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'decay_stale_days': app_config.decay.stale_days,
            'archive_days': app_config.decay.archive_days,
            'aws_region': app_config.bedrock_llm.region
        }
    }
