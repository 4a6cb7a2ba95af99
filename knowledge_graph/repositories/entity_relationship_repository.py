"""Repository for entity relationships.

Every write and pair lookup canonicalizes direction so that the smaller
entity id is always ``from_entity_id``; ``(A, B)`` and ``(B, A)`` therefore
address the same row.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import RelationshipLimitExceededError
from knowledge_graph.database.models import EntityRelationship
from knowledge_graph.repositories.base_repository import BaseRepository
from knowledge_graph.schemas.enums import RelationshipType
from knowledge_graph.utils.logging import get_logger
from knowledge_graph.utils.normalization import canonical_pair, generate_short_id

LOGGER = get_logger(__name__)


class EntityRelationshipRepository(BaseRepository[EntityRelationship]):
    """Repository for EntityRelationship rows with a per-workspace quota."""

    def __init__(self, session: AsyncSession, config: Optional[KnowledgeGraphSettings] = None):
        super().__init__(session, EntityRelationship)
        self.config = config or settings.knowledge_graph

    async def create_if_absent(
        self,
        workspace_id: str,
        from_entity_id: str,
        to_entity_id: str,
        relationship_type: RelationshipType,
        label: Optional[str] = None,
        strength: float = 0.5,
        evidence: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[EntityRelationship]:
        """Create a relationship unless the same pair and type already exists.

        Args:
            workspace_id: Owning workspace
            from_entity_id: One endpoint
            to_entity_id: The other endpoint
            relationship_type: Relationship type
            label: Optional human-readable label
            strength: Score in [0, 1]
            evidence: List of ``{"doc_id", "context"}`` snippets

        Returns:
            The new relationship, or None when it already existed

        Raises:
            RelationshipLimitExceededError: If the workspace is at its quota
        """
        current = await self.count({"workspace_id": workspace_id})
        if current >= self.config.relationship_limit:
            raise RelationshipLimitExceededError(workspace_id, current, self.config.relationship_limit)

        from_id, to_id = canonical_pair(from_entity_id, to_entity_id)
        now = datetime.now(timezone.utc)
        inserted_id = await self.insert_if_absent(
            id=generate_short_id(),
            workspace_id=workspace_id,
            from_entity_id=from_id,
            to_entity_id=to_id,
            relationship_type=relationship_type.value,
            label=label,
            strength=strength,
            evidence=evidence or [],
            created_at=now,
            updated_at=now,
        )
        if inserted_id is None:
            return None

        return await self.get_by_id(inserted_id)

    async def get_by_pair(
        self,
        entity_a_id: str,
        entity_b_id: str,
        relationship_type: RelationshipType,
    ) -> Optional[EntityRelationship]:
        """Get the relationship of a type between two entities, in either order."""
        from_id, to_id = canonical_pair(entity_a_id, entity_b_id)
        try:
            query = select(EntityRelationship).where(
                EntityRelationship.from_entity_id == from_id,
                EntityRelationship.to_entity_id == to_id,
                EntityRelationship.relationship_type == relationship_type.value,
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving relationship {from_id} -> {to_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def get_by_entity(self, entity_id: str, limit: int = 100) -> List[EntityRelationship]:
        """Get relationships touching an entity, strongest first."""
        try:
            query = (
                select(EntityRelationship)
                .where(
                    or_(
                        EntityRelationship.from_entity_id == entity_id,
                        EntityRelationship.to_entity_id == entity_id,
                    )
                )
                .order_by(EntityRelationship.strength.desc(), EntityRelationship.id)
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving relationships for entity {entity_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def get_by_workspace(
        self,
        workspace_id: str,
        entity_id: Optional[str] = None,
        relationship_type: Optional[RelationshipType] = None,
        min_strength: Optional[float] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EntityRelationship]:
        """List relationships of a workspace with optional filters."""
        try:
            query = select(EntityRelationship).where(EntityRelationship.workspace_id == workspace_id)
            if entity_id:
                query = query.where(
                    or_(
                        EntityRelationship.from_entity_id == entity_id,
                        EntityRelationship.to_entity_id == entity_id,
                    )
                )
            if relationship_type:
                query = query.where(EntityRelationship.relationship_type == relationship_type.value)
            if min_strength is not None:
                query = query.where(EntityRelationship.strength >= min_strength)

            query = (
                query.order_by(EntityRelationship.strength.desc(), EntityRelationship.id)
                .offset(offset)
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing relationships for workspace {workspace_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def update(
        self,
        relationship_id: str,
        label: Optional[str] = None,
        strength: Optional[float] = None,
        evidence: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[EntityRelationship]:
        """Update label, strength or evidence of a relationship.

        Returns:
            Updated relationship, or None if it does not exist
        """
        try:
            relationship = await self.get_by_id(relationship_id)
            if not relationship:
                return None

            if label is not None:
                relationship.label = label
            if strength is not None:
                relationship.strength = strength
            if evidence is not None:
                relationship.evidence = list(evidence)
            relationship.updated_at = datetime.now(timezone.utc)

            await self.session.commit()
            return relationship
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating relationship {relationship_id}: {str(e)}", exc_info=True)
            raise

    async def delete_by_entity(self, entity_id: str) -> int:
        try:
            result = await self.session.execute(
                delete(EntityRelationship).where(
                    or_(
                        EntityRelationship.from_entity_id == entity_id,
                        EntityRelationship.to_entity_id == entity_id,
                    )
                )
            )
            await self.session.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error deleting relationships for entity {entity_id}: {str(e)}",
                exc_info=True,
            )
            raise
