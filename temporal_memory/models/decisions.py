"""
Memory update decisions.

The reasoning service answers with one tool call; ``decode_tool_call``
turns it into exactly one of the four decision dataclasses below, and
everything downstream dispatches on the dataclass type.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Collection, Dict, Optional, Union

from ..utils.bedrock_llm import ToolCall
from ..utils.logging_config import get_logger
from .core import MEMORY_TYPES

logger = get_logger(__name__)

NO_CLEAR_ACTION = 'No clear action determined'


class UpdateStrategy(str, Enum):
    """How an UPDATE merges new content onto an existing memory."""
    REPLACE = 'replace'
    APPEND = 'append'
    SUPERSEDE = 'supersede'


@dataclass(frozen=True)
class AddDecision:
    content: str
    memory_type: str
    reasoning: str


@dataclass(frozen=True)
class UpdateDecision:
    memory_id: str
    new_content: str
    strategy: UpdateStrategy
    reasoning: str


@dataclass(frozen=True)
class DeleteDecision:
    memory_id: str
    hard_delete: bool
    reasoning: str


@dataclass(frozen=True)
class NoOpDecision:
    reasoning: str
    existing_memory_id: Optional[str] = None


Decision = Union[AddDecision, UpdateDecision, DeleteDecision, NoOpDecision]

MEMORY_UPDATE_TOOLS = [
    {
        'name': 'add_memory',
        'description': 'Add a new memory when no semantically equivalent memory exists. '
                       'Use for genuinely new information that provides unique value.',
        'input_schema': {
            'type': 'object',
            'properties': {
                'content': {
                    'type': 'string',
                    'description': 'The memory content to store, written clearly and concisely'
                },
                'memory_type': {
                    'type': 'string',
                    'enum': list(MEMORY_TYPES),
                    'description': 'The type of memory'
                },
                'reasoning': {
                    'type': 'string',
                    'description': 'Brief explanation of why this is a new memory worth storing'
                }
            },
            'required': ['content', 'memory_type', 'reasoning']
        }
    },
    {
        'name': 'update_memory',
        'description': 'Update an existing memory with new, more detailed, or corrected information',
        'input_schema': {
            'type': 'object',
            'properties': {
                'memory_id': {
                    'type': 'string',
                    'description': 'ID of the existing memory to update'
                },
                'new_content': {
                    'type': 'string',
                    'description': 'The updated memory content'
                },
                'merge_strategy': {
                    'type': 'string',
                    'enum': [strategy.value for strategy in UpdateStrategy],
                    'description': "How to merge: 'replace' overwrites completely (corrections, job changes), "
                                   "'append' adds detail (more info about same thing), "
                                   "'supersede' marks old as historical and creates new (life changes)"
                },
                'reasoning': {
                    'type': 'string',
                    'description': 'Why this memory needs updating and what changed'
                }
            },
            'required': ['memory_id', 'new_content', 'merge_strategy', 'reasoning']
        }
    },
    {
        'name': 'delete_memory',
        'description': 'Delete a memory that is contradicted by new information or explicitly requested to be forgotten',
        'input_schema': {
            'type': 'object',
            'properties': {
                'memory_id': {
                    'type': 'string',
                    'description': 'ID of the memory to delete'
                },
                'hard_delete': {
                    'type': 'boolean',
                    'description': "True ONLY if the user explicitly said 'forget', 'don't remember', 'delete'. "
                                   'False for contradiction-based removal (archives instead)'
                },
                'reasoning': {
                    'type': 'string',
                    'description': 'Why this memory should be removed'
                }
            },
            'required': ['memory_id', 'hard_delete', 'reasoning']
        }
    },
    {
        'name': 'no_operation',
        'description': 'No change needed - the information already exists in equivalent form, '
                       'is too trivial, or is conversational noise',
        'input_schema': {
            'type': 'object',
            'properties': {
                'reasoning': {
                    'type': 'string',
                    'description': 'Why no operation is needed'
                },
                'existing_memory_id': {
                    'type': 'string',
                    'description': 'If the info already exists, the ID of that memory'
                }
            },
            'required': ['reasoning']
        }
    },
]


def _reasoning(tool_input: Dict[str, Any], tool_call: ToolCall) -> str:
    return str(tool_input.get('reasoning') or tool_call.reasoning_text or '').strip()


def decode_tool_call(tool_call: Optional[ToolCall], known_memory_ids: Collection[str], fallback_content: str = '') -> Decision:
    """Decode a tool call into a decision.

    Anything the model did not clearly request becomes a NoOpDecision:
    no tool call, an unknown tool name, a memory_id outside the compared
    set, or a missing required field.

    Args:
        tool_call: The model's tool call, or None
        known_memory_ids: IDs of the memories the candidate was compared against
        fallback_content: Candidate content used when add_memory omits content

    Returns:
        Exactly one decision variant
    """
    if tool_call is None:
        return NoOpDecision(reasoning=NO_CLEAR_ACTION)

    tool_input = tool_call.input if isinstance(tool_call.input, dict) else {}
    reasoning = _reasoning(tool_input, tool_call)

    if tool_call.name == 'add_memory':
        content = str(tool_input.get('content') or fallback_content).strip()
        if not content:
            return NoOpDecision(reasoning=f'{NO_CLEAR_ACTION}: add_memory without content')
        memory_type = tool_input.get('memory_type')
        if memory_type not in MEMORY_TYPES:
            memory_type = 'fact'
        return AddDecision(content=content, memory_type=memory_type, reasoning=reasoning)

    if tool_call.name in ('update_memory', 'delete_memory'):
        memory_id = tool_input.get('memory_id')
        if memory_id not in known_memory_ids:
            logger.warning(f'{tool_call.name} referenced unknown memory {memory_id}')
            return NoOpDecision(reasoning=f'{NO_CLEAR_ACTION}: {tool_call.name} referenced unknown memory {memory_id}')

        if tool_call.name == 'delete_memory':
            return DeleteDecision(memory_id=memory_id, hard_delete=tool_input.get('hard_delete') is True, reasoning=reasoning)

        new_content = str(tool_input.get('new_content') or '').strip()
        try:
            strategy = UpdateStrategy(tool_input.get('merge_strategy'))
        except ValueError:
            strategy = None
        if not new_content or strategy is None:
            return NoOpDecision(reasoning=f'{NO_CLEAR_ACTION}: incomplete update_memory call')
        return UpdateDecision(memory_id=memory_id, new_content=new_content, strategy=strategy, reasoning=reasoning)

    if tool_call.name == 'no_operation':
        existing = tool_input.get('existing_memory_id')
        if existing not in known_memory_ids:
            existing = None
        return NoOpDecision(reasoning=reasoning or NO_CLEAR_ACTION, existing_memory_id=existing)

    logger.warning(f'Unknown tool requested: {tool_call.name}')
    return NoOpDecision(reasoning=f'{NO_CLEAR_ACTION}: unknown tool {tool_call.name}')
