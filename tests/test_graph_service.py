"""Tests for graph lookups, merges and document cleanup."""

import pytest
from unittest.mock import AsyncMock, Mock
from sqlalchemy.exc import OperationalError

from knowledge_graph.core.exceptions import EntityNotFoundError, ValidationError
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.schemas.enums import EntityType, ProductSource, RelationshipType
from knowledge_graph.schemas.knowledge import MergeEntitiesRequest
from knowledge_graph.services.knowledge.evidence import EvidenceGatherer
from knowledge_graph.services.knowledge.graph_service import KnowledgeGraphService

WORKSPACE_ID = "ws-test"


class TestNeighborhood:
    """Entity neighborhood reads."""

    @pytest.mark.asyncio
    async def test_neighborhood_lists_relationships_and_neighbors(self, db_session, kg_config, make_entity):
        acme = await make_entity("Acme")
        jane = await make_entity("Jane Doe", EntityType.PERSON)
        beta = await make_entity("Beta")
        rel_repo = EntityRelationshipRepository(db_session)
        await rel_repo.create_if_absent(WORKSPACE_ID, acme.id, jane.id, RelationshipType.ORGANIZATIONAL, strength=0.9)
        await rel_repo.create_if_absent(WORKSPACE_ID, acme.id, jane.id, RelationshipType.CO_OCCURRENCE, strength=0.2)
        await rel_repo.create_if_absent(WORKSPACE_ID, beta.id, acme.id, RelationshipType.FINANCIAL, strength=0.6)

        neighborhood = await KnowledgeGraphService(db_session, kg_config).get_entity_neighborhood(acme.id)

        assert neighborhood.entity.id == acme.id
        assert [r.strength for r in neighborhood.relationships] == [0.9, 0.6, 0.2]
        assert [n.id for n in neighborhood.neighbors] == [jane.id, beta.id]

    @pytest.mark.asyncio
    async def test_min_strength_filters(self, db_session, kg_config, make_entity):
        acme = await make_entity("Acme")
        beta = await make_entity("Beta")
        await EntityRelationshipRepository(db_session).create_if_absent(
            WORKSPACE_ID, acme.id, beta.id, RelationshipType.CO_OCCURRENCE, strength=0.1
        )

        neighborhood = await KnowledgeGraphService(db_session, kg_config).get_entity_neighborhood(
            acme.id, min_strength=0.5
        )

        assert neighborhood.relationships == []
        assert neighborhood.neighbors == []

    @pytest.mark.asyncio
    async def test_unknown_entity(self, db_session, kg_config):
        with pytest.raises(EntityNotFoundError) as exc_info:
            await KnowledgeGraphService(db_session, kg_config).get_entity_neighborhood("missing")

        assert str(exc_info.value) == "Entity not found: missing"


class TestMergeAndDelete:
    """Service-level validation around merge and delete."""

    @pytest.mark.asyncio
    async def test_target_among_sources_is_rejected(self, db_session, kg_config, make_entity):
        acme = await make_entity("Acme")
        request = MergeEntitiesRequest(source_entity_ids=[acme.id], target_entity_id=acme.id)

        with pytest.raises(ValidationError):
            await KnowledgeGraphService(db_session, kg_config).merge_entities(WORKSPACE_ID, request)

    @pytest.mark.asyncio
    async def test_entity_from_other_workspace_is_not_found(self, db_session, kg_config, make_entity):
        acme = await make_entity("Acme")
        foreign = await make_entity("Acme Inc", workspace_id="ws-other")
        request = MergeEntitiesRequest(source_entity_ids=[foreign.id], target_entity_id=acme.id)

        with pytest.raises(EntityNotFoundError):
            await KnowledgeGraphService(db_session, kg_config).merge_entities(WORKSPACE_ID, request)

    @pytest.mark.asyncio
    async def test_merge(self, db_session, kg_config, make_entity, add_doc_mentions):
        acme = await make_entity("Acme")
        dup = await make_entity("Acme Inc")
        await add_doc_mentions({"doc-1": [acme], "doc-2": [dup]})
        request = MergeEntitiesRequest(source_entity_ids=[dup.id, dup.id], target_entity_id=acme.id)

        merged = await KnowledgeGraphService(db_session, kg_config).merge_entities(WORKSPACE_ID, request)

        assert merged.id == acme.id
        assert merged.aliases == ["Acme Inc"]
        assert merged.mention_count == 2
        assert merged.doc_count == 2

    @pytest.mark.asyncio
    async def test_delete_entity(self, db_session, kg_config, make_entity):
        acme = await make_entity("Acme")
        service = KnowledgeGraphService(db_session, kg_config)

        await service.delete_entity(acme.id)

        with pytest.raises(EntityNotFoundError):
            await service.delete_entity(acme.id)

    @pytest.mark.asyncio
    async def test_delete_document_mentions(self, db_session, kg_config, make_entity, add_doc_mentions):
        acme = await make_entity("Acme")
        beta = await make_entity("Beta")
        await add_doc_mentions({"doc-1": [acme, beta], "doc-2": [acme]})
        service = KnowledgeGraphService(db_session, kg_config)

        cleanup = await service.delete_document_mentions(WORKSPACE_ID, "doc-1")

        assert cleanup.entities_recounted == 2
        assert cleanup.entities_removed == 1
        remaining = await service.list_entities(WORKSPACE_ID)
        assert [e.id for e in remaining] == [acme.id]
        await db_session.refresh(remaining[0])
        assert remaining[0].doc_count == 1


class TestEvidenceGatherer:
    """Evidence snippets for a pair."""

    @pytest.mark.asyncio
    async def test_contexts_per_entity_are_capped(self, db_session, make_entity):
        acme = await make_entity("Acme")
        beta = await make_entity("Beta")
        repo = EntityMentionRepository(db_session)
        for i, field_path in enumerate(["p1", "p2", "p3"]):
            await repo.create_if_absent(
                WORKSPACE_ID, acme.id, ProductSource.DOCS, doc_id="doc-1", context=f"acme {i}", field_path=field_path
            )
        await repo.create_if_absent(WORKSPACE_ID, beta.id, ProductSource.DOCS, doc_id="doc-1", context="beta 0")
        await repo.create_if_absent(WORKSPACE_ID, beta.id, ProductSource.DOCS, doc_id="doc-2")

        evidence = await EvidenceGatherer(repo).gather(acme.id, beta.id, ["doc-1", "doc-2"])

        acme_part, beta_part = evidence[0]["context"].split(" | ")
        assert evidence[0]["doc_id"] == "doc-1"
        assert len(acme_part.split("; ")) == 2
        assert set(acme_part.split("; ")) <= {"acme 0", "acme 1", "acme 2"}
        assert beta_part == "beta 0"
        assert evidence[1] == {"doc_id": "doc-2", "context": "Co-occurrence in document"}

    @pytest.mark.asyncio
    async def test_max_docs(self, db_session):
        evidence = await EvidenceGatherer(EntityMentionRepository(db_session)).gather(
            "a", "b", [f"doc-{i}" for i in range(8)], max_docs=5
        )

        assert len(evidence) == 5

    @pytest.mark.asyncio
    async def test_store_failure_degrades_to_placeholder(self):
        repo = Mock(spec=EntityMentionRepository)
        repo.session = AsyncMock()
        repo.get_by_doc = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("locked")))

        evidence = await EvidenceGatherer(repo).gather("a", "b", ["doc-1"])

        assert evidence == [{"doc_id": "doc-1", "context": "Context unavailable"}]
        repo.session.rollback.assert_awaited_once()
