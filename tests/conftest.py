"""
Shared fixtures: a real SQLite store per test and in-memory stand-ins for
the Bedrock and OpenSearch clients.
"""

import hashlib
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from temporal_memory.services.entity_store import EntityStore
from temporal_memory.services.fact_store import FactStore
from temporal_memory.services.graph_store import GraphStore
from temporal_memory.services.job_queue import JobQueue
from temporal_memory.services.memory_update import MemoryUpdateEngine
from temporal_memory.utils.bedrock_llm import BedrockLLMError, ToolCall
from temporal_memory.utils.config import DatabaseConfig, config
from temporal_memory.utils.database import Database

USER = 'user-1'
OTHER_USER = 'user-2'
EMBED_DIMENSION = 32


def at(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def tool_call(name: str, **tool_input) -> ToolCall:
    return ToolCall(name=name, input=tool_input)


class FakeLLM:
    """Scripted reasoning service: tool calls and text responses are served in order."""

    def __init__(self):
        self.tool_calls: List[Optional[ToolCall]] = []
        self.responses: List[str] = []
        self.fail_generate = False
        self.prompts: List[str] = []
        self.healthy = True

    async def invoke_tools(self, messages, system_prompt, tools, max_tokens=None) -> Optional[ToolCall]:
        self.prompts.append(messages[0]['content'][0]['text'])
        return self.tool_calls.pop(0) if self.tool_calls else None

    async def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None,
                                stop_sequences=None) -> Tuple[str, Dict[str, Any]]:
        self.prompts.append(messages[0]['content'][0]['text'])
        if self.fail_generate:
            raise BedrockLLMError('Scripted LLM failure')
        return (self.responses.pop(0) if self.responses else ''), {}

    async def health_check(self) -> bool:
        return self.healthy


def embed_text(text: str) -> List[float]:
    """Deterministic bag-of-words vector."""
    vector = [0.0] * EMBED_DIMENSION
    for word in (text or '').lower().split():
        digest = hashlib.md5(word.strip('.,!?').encode('utf-8')).digest()
        vector[digest[0] % EMBED_DIMENSION] += 1.0
    norm = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / norm for v in vector]


class FakeEmbedder:

    def __init__(self):
        self.calls = 0

    async def embed_query(self, text: str) -> List[float]:
        self.calls += 1
        return embed_text(text)

    async def embed_document(self, text: str) -> List[float]:
        self.calls += 1
        return embed_text(text)

    async def health_check(self) -> bool:
        return True


class FakeVectorIndex:
    """In-memory similarity index with the OpenSearch client's interface."""

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.scripted_hits: Optional[List[Tuple[str, float]]] = None
        self.created = False

    async def create_index_if_not_exists(self) -> str:
        self.created = True
        return 'fake_entity'

    async def index_entity(self, entity_id, user_id, name, entity_type, embedding, status='active', updated_at=None) -> bool:
        self.documents[entity_id] = {
            'user_id': user_id,
            'name': name,
            'entity_type': entity_type,
            'embedding': embedding,
            'status': status,
            'updated_at': updated_at
        }
        return True

    async def similar(self, user_id, query_vector, top_k=10, min_similarity=0.0) -> List[Tuple[str, float]]:
        if self.scripted_hits is not None:
            return list(self.scripted_hits)
        hits = []
        for entity_id, doc in self.documents.items():
            if doc['user_id'] != user_id or doc['status'] != 'active':
                continue
            score = sum(a * b for a, b in zip(query_vector, doc['embedding']))
            if score >= min_similarity:
                hits.append((entity_id, score))
        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:top_k]

    async def set_status(self, entity_id: str, status: str) -> bool:
        if entity_id in self.documents:
            self.documents[entity_id]['status'] = status
            return True
        return False

    async def delete_entity(self, entity_id: str) -> bool:
        return self.documents.pop(entity_id, None) is not None

    async def health_check(self) -> bool:
        return True


@pytest.fixture
def app_config(tmp_path):
    return replace(config, database=DatabaseConfig(path=str(tmp_path / 'memory.db'), busy_timeout_ms=5000))


@pytest_asyncio.fixture
async def db(app_config):
    database = Database(app_config.database)
    await database.initialize()
    return database


@pytest.fixture
def entities(db):
    return EntityStore(db)


@pytest.fixture
def fact_store(db):
    return FactStore(db)


@pytest.fixture
def graph_store(db):
    return GraphStore(db)


@pytest.fixture
def job_queue(db, app_config):
    return JobQueue(db, app_config.queue)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def changes():
    return []


@pytest.fixture
def engine(db, entities, fact_store, llm, embedder, vector_index, app_config, changes):

    async def on_change(user_id):
        changes.append(user_id)

    return MemoryUpdateEngine(db, entities, fact_store, llm, embedder, vector_index, app_config.decision, on_change=on_change)


@pytest.fixture
def make_entity(db, entities):
    """Insert an active entity directly and return it."""

    async def _make(name: str, user_id: str = USER, now: Optional[datetime] = None, **kwargs):
        async with db.transaction() as conn:
            entity_id = await entities.insert(conn, user_id, name, now or datetime.now(timezone.utc), **kwargs)
        return await entities.get(entity_id)

    return _make
