"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .services.memory_management import MemoryManagementError, MemoryManagementService
from .utils.config import config
from .utils.logging_config import get_logger
from .utils.timestamp_utils import parse_iso

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Temporal Memory')
memory_service = MemoryManagementService()

_initialized = asyncio.Event()


async def _ready() -> MemoryManagementService:
    if not _initialized.is_set():
        await memory_service.initialize()
        _initialized.set()
    return memory_service


def _require_user(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')


@mcp.tool()
async def get_memory_context(user_id: str, focus: Optional[str] = None, format: str = 'document', max_chars: Optional[int] = None) -> Any:
    """Assemble the user's memory context document.

    Args:
        user_id: User ID
        focus: Entity name to list first (optional)
        format: 'document', 'compact' or 'structured'
        max_chars: Size budget for the document (optional)

    Returns:
        Markdown document, or a JSON object for the structured format
    """
    try:
        _require_user(user_id)
        service = await _ready()
        return await service.get_memory_context(user_id, focus=focus, format=format, max_chars=max_chars)
    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP get_memory_context: {e}')
        raise Exception(f'Memory context failed: {e}')


@mcp.tool()
async def submit_entry(user_id: str,
                       entry_id: str,
                       content: str,
                       category: Optional[str] = None,
                       sentiment: Optional[float] = None,
                       created_at: Optional[str] = None,
                       title: Optional[str] = None) -> Dict[str, str]:
    """Queue a new entry for knowledge extraction.

    Args:
        user_id: User ID
        entry_id: ID of the entry in the content store
        content: Entry text
        category: Life-area category (optional)
        sentiment: Entry sentiment from -1.0 to 1.0 (optional)
        created_at: ISO timestamp of the entry (optional)
        title: Entry title (optional)

    Returns:
        The queued extract job ID
    """
    _require_user(user_id)
    service = await _ready()
    job_id = await service.submit_entry(user_id, entry_id, content, category, sentiment, parse_iso(created_at), title)
    logger.debug(f'MCP queued entry {entry_id} for user {user_id} as job {job_id}')
    return {'job_id': job_id}


@mcp.tool()
async def process_memory_jobs(batch_size: Optional[int] = None) -> Dict[str, Any]:
    """Run one batch of queued memory jobs.

    Args:
        batch_size: Maximum number of jobs to process (optional)

    Returns:
        Per-outcome counts and per-job results
    """
    service = await _ready()
    return await service.process_jobs(batch_size)


@mcp.tool()
async def run_maintenance(user_id: Optional[str] = None) -> Dict[str, Any]:
    """Run the decay and archival passes, for one user or everyone.

    Args:
        user_id: User ID (optional)

    Returns:
        Reports of both passes
    """
    service = await _ready()
    return await service.run_maintenance(user_id)


@mcp.tool()
async def get_fact_history(user_id: str, entity_name: str, predicate: str) -> List[Dict[str, Any]]:
    """List every version of one fact about an entity, newest first.

    Args:
        user_id: User ID
        entity_name: Name of the entity
        predicate: Fact predicate, e.g. works_at

    Returns:
        Fact versions with their validity windows
    """
    try:
        _require_user(user_id)
        service = await _ready()
        return await service.get_fact_history(user_id, entity_name, predicate)
    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP get_fact_history: {e}')
        raise Exception(f'Fact history failed: {e}')


@mcp.tool()
async def get_facts_at_time(user_id: str, entity_name: str, as_of: str) -> List[Dict[str, Any]]:
    """List the facts that were valid for an entity at a point in time.

    Args:
        user_id: User ID
        entity_name: Name of the entity
        as_of: ISO timestamp

    Returns:
        Facts valid at that time
    """
    try:
        _require_user(user_id)
        service = await _ready()
        return await service.get_facts_at_time(user_id, entity_name, parse_iso(as_of))
    except (MemoryManagementError, ValueError) as e:
        logger.error(f'Error in MCP get_facts_at_time: {e}')
        raise Exception(f'Point-in-time query failed: {e}')


@mcp.tool()
async def detect_changes(user_id: str, scope: str = 'monthly', entity_name: Optional[str] = None) -> Dict[str, Any]:
    """Report contradictions and sentiment evolution between two time windows.

    Args:
        user_id: User ID
        scope: 'weekly', 'monthly' or 'quarterly'
        entity_name: Restrict to one entity (optional)

    Returns:
        Structured findings and ranked summaries
    """
    _require_user(user_id)
    service = await _ready()
    return await service.detect_changes(user_id, scope, entity_name)


@mcp.tool()
async def health() -> Dict[str, Any]:
    """Report the health of the store and every remote dependency."""
    service = await _ready()
    return await service.health()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
