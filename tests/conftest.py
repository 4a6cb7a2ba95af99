"""Pytest configuration and shared fixtures."""

from typing import AsyncGenerator, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, Mock
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from knowledge_graph.core.config import KnowledgeGraphSettings
from knowledge_graph.core.unified_llm import ComposeResult, UnifiedLLMClient
from knowledge_graph.database.base import Base
from knowledge_graph.database import models  # noqa: F401  registers the tables
from knowledge_graph.main import app
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_repository import EntityRepository
from knowledge_graph.schemas.enums import EntityType, ProductSource
from knowledge_graph.database.models import WorkspaceEntity

WORKSPACE_ID = "ws-test"


@pytest.fixture
def test_client() -> TestClient:
    """Create FastAPI test client.

    Returns:
        TestClient: FastAPI test client instance
    """
    return TestClient(app)


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Ensure FastAPI dependency overrides are reset between tests."""
    app.dependency_overrides = {}
    yield
    app.dependency_overrides = {}


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the graph schema created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Database session bound to the in-memory engine."""
    session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture
def kg_config() -> KnowledgeGraphSettings:
    """Knowledge graph settings with the documented defaults."""
    return KnowledgeGraphSettings(
        relationship_limit=5000,
        entity_limit=10000,
        max_entities_per_ingest=500,
        detector_timeout_seconds=15.0,
        max_ai_batch=8,
        min_cooccurrence_docs_for_ai=2,
    )


@pytest.fixture
def mock_llm_client() -> Mock:
    """Compose client that returns an empty analysis unless told otherwise.

    Returns:
        Mock: Mocked UnifiedLLMClient with an async ``compose_text``
    """
    client = Mock(spec=UnifiedLLMClient)
    client.compose_text = AsyncMock(
        return_value=ComposeResult(text="", provider="dev", model="dev")
    )
    return client


@pytest.fixture
def make_entity(db_session: AsyncSession):
    """Factory creating entities directly through the repository."""

    async def _make(
        name: str,
        entity_type: EntityType = EntityType.ORGANIZATION,
        workspace_id: str = WORKSPACE_ID,
        aliases: Optional[List[str]] = None,
    ) -> WorkspaceEntity:
        entity, _ = await EntityRepository(db_session).get_or_create(
            workspace_id, name, entity_type, aliases=aliases
        )
        return entity

    return _make


@pytest.fixture
def add_doc_mentions(db_session: AsyncSession):
    """Factory recording docs mentions from ``{doc_id: [entity, ...]}``."""

    async def _add(mentions: Dict[str, List[WorkspaceEntity]], workspace_id: str = WORKSPACE_ID) -> None:
        mention_repo = EntityMentionRepository(db_session)
        entity_repo = EntityRepository(db_session)
        for doc_id, entities in mentions.items():
            for entity in entities:
                await mention_repo.create_if_absent(
                    workspace_id=workspace_id,
                    entity_id=entity.id,
                    product_source=ProductSource.DOCS,
                    doc_id=doc_id,
                    context=f"{entity.name} in {doc_id}",
                )
                await entity_repo.recalculate_counts(entity.id)

    return _add
