"""Read and maintenance operations on a workspace graph."""

from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import EntityNotFoundError, ValidationError
from knowledge_graph.database.models import WorkspaceEntity
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.repositories.entity_repository import EntityRepository
from knowledge_graph.schemas.enums import EntityType
from knowledge_graph.schemas.knowledge import (
    DocumentCleanupResult,
    EntityNeighborhood,
    EntityResponse,
    MergeEntitiesRequest,
    RelationshipResponse,
)
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)


class KnowledgeGraphService:
    """Entity neighborhood lookups, listing, merging and cleanup."""

    def __init__(self, session: AsyncSession, config: Optional[KnowledgeGraphSettings] = None):
        self.config = config or settings.knowledge_graph
        self.entity_repository = EntityRepository(session, self.config)
        self.mention_repository = EntityMentionRepository(session)
        self.relationship_repository = EntityRelationshipRepository(session, self.config)

    async def get_entity(self, entity_id: str) -> WorkspaceEntity:
        entity = await self.entity_repository.get_by_id(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    async def get_entity_neighborhood(
        self,
        entity_id: str,
        min_strength: float = 0.0,
        limit: int = 50,
    ) -> EntityNeighborhood:
        """Get an entity, its strongest relationships and the entities they reach.

        Raises:
            EntityNotFoundError: If the entity does not exist
        """
        entity = await self.get_entity(entity_id)

        relationships = [
            rel for rel in await self.relationship_repository.get_by_entity(entity_id, limit=limit)
            if rel.strength >= min_strength
        ]
        neighbor_ids = []
        for rel in relationships:
            other = rel.to_entity_id if rel.from_entity_id == entity_id else rel.from_entity_id
            if other not in neighbor_ids:
                neighbor_ids.append(other)
        neighbors = await self.entity_repository.get_by_ids(neighbor_ids)

        return EntityNeighborhood(
            entity=EntityResponse.model_validate(entity),
            relationships=[RelationshipResponse.model_validate(rel) for rel in relationships],
            neighbors=[
                EntityResponse.model_validate(neighbors[neighbor_id])
                for neighbor_id in neighbor_ids
                if neighbor_id in neighbors
            ],
        )

    async def list_entities(
        self,
        workspace_id: str,
        entity_type: Optional[EntityType] = None,
        search: Optional[str] = None,
        sort: str = "doc_count",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> List[WorkspaceEntity]:
        return await self.entity_repository.list_by_workspace(
            workspace_id,
            entity_type=entity_type,
            search=search,
            sort=sort,
            order=order,
            limit=limit,
            offset=offset,
        )

    async def merge_entities(self, workspace_id: str, request: MergeEntitiesRequest) -> WorkspaceEntity:
        """Merge source entities into a target entity of the same workspace.

        Raises:
            ValidationError: If the target is listed among the sources
            EntityNotFoundError: If any entity is missing or belongs elsewhere
        """
        source_ids = list(dict.fromkeys(request.source_entity_ids))
        if request.target_entity_id in source_ids:
            raise ValidationError("Target entity cannot also be a merge source")

        entities = await self.entity_repository.get_by_ids(source_ids + [request.target_entity_id])
        for entity_id in source_ids + [request.target_entity_id]:
            entity = entities.get(entity_id)
            if entity is None or entity.workspace_id != workspace_id:
                raise EntityNotFoundError(entity_id)

        return await self.entity_repository.merge(
            source_ids,
            request.target_entity_id,
            merged_name=request.merged_name,
            merged_aliases=request.merged_aliases,
        )

    async def delete_entity(self, entity_id: str) -> None:
        """Delete an entity with its mentions and relationships.

        Raises:
            EntityNotFoundError: If the entity does not exist
        """
        if not await self.entity_repository.delete(entity_id):
            raise EntityNotFoundError(entity_id)
        LOGGER.info("Deleted entity", extra={"entity_id": entity_id})

    async def delete_document_mentions(self, workspace_id: str, doc_id: str) -> DocumentCleanupResult:
        """Drop a deleted document from the graph.

        Counts of the affected entities are recomputed, and entities left
        without any mention are removed.
        """
        entity_ids = await self.mention_repository.delete_by_doc(doc_id)
        for entity_id in entity_ids:
            await self.entity_repository.recalculate_counts(entity_id)
        removed = await self.mention_repository.cleanup_stale_entities(workspace_id)

        LOGGER.info(
            "Removed document from graph",
            extra={"workspace_id": workspace_id, "doc_id": doc_id, "entities_removed": removed},
        )
        return DocumentCleanupResult(entities_recounted=len(entity_ids), entities_removed=removed)
