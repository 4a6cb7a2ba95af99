"""Repository for entity mentions.

Mentions are idempotent: the ``(entity_id, mention_key)`` unique constraint
turns a re-ingested identical mention into a no-op.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import delete, exists, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from knowledge_graph.core.exceptions import ValidationError
from knowledge_graph.database.models import EntityMention, EntityRelationship, WorkspaceEntity
from knowledge_graph.repositories.base_repository import BaseRepository
from knowledge_graph.schemas.enums import MentionSource, ProductSource
from knowledge_graph.utils.logging import get_logger
from knowledge_graph.utils.normalization import generate_mention_key, generate_short_id

LOGGER = get_logger(__name__)


class EntityMentionRepository(BaseRepository[EntityMention]):
    """Repository for EntityMention rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, EntityMention)

    async def create_if_absent(
        self,
        workspace_id: str,
        entity_id: str,
        product_source: ProductSource,
        doc_id: Optional[str] = None,
        context: Optional[str] = None,
        field_path: Optional[str] = None,
        confidence: Optional[float] = None,
        source: MentionSource = MentionSource.EXTRACTION,
        source_ref: Optional[str] = None,
    ) -> Optional[EntityMention]:
        """Record a mention unless an identical one already exists.

        Args:
            workspace_id: Owning workspace
            entity_id: Mentioned entity
            product_source: Surface the mention came from
            doc_id: Document id, required for the docs surface
            context: Text around the mention
            field_path: Optional location inside the document
            confidence: Extraction confidence, defaults to 0.5
            source: How the mention was produced
            source_ref: Product-specific reference

        Returns:
            The new mention, or None when it was a duplicate

        Raises:
            ValidationError: If a docs mention has no doc_id
        """
        if product_source == ProductSource.DOCS and not doc_id:
            raise ValidationError("doc_id is required when product_source is 'docs'")

        inserted_id = await self.insert_if_absent(
            id=generate_short_id(),
            workspace_id=workspace_id,
            entity_id=entity_id,
            doc_id=doc_id,
            context=context,
            field_path=field_path,
            confidence=0.5 if confidence is None else confidence,
            source=source.value,
            product_source=product_source.value,
            source_ref=source_ref,
            mention_key=generate_mention_key(product_source.value, doc_id, source_ref, field_path),
            created_at=datetime.now(timezone.utc),
        )
        if inserted_id is None:
            return None

        LOGGER.debug(
            "Created entity mention",
            extra={"mention_id": inserted_id, "entity_id": entity_id, "doc_id": doc_id},
        )
        return await self.get_by_id(inserted_id)

    async def get_by_entity(self, entity_id: str, limit: int = 100, offset: int = 0) -> List[EntityMention]:
        """Get mentions of an entity, newest first."""
        try:
            query = (
                select(EntityMention)
                .where(EntityMention.entity_id == entity_id)
                .order_by(EntityMention.created_at.desc(), EntityMention.id)
                .offset(offset)
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error retrieving mentions for entity {entity_id}: {str(e)}", exc_info=True)
            raise

    async def get_by_doc(self, doc_id: str) -> List[EntityMention]:
        """Get all mentions recorded for a document."""
        try:
            query = (
                select(EntityMention)
                .where(EntityMention.doc_id == doc_id)
                .order_by(EntityMention.created_at, EntityMention.id)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error retrieving mentions for doc {doc_id}: {str(e)}", exc_info=True)
            raise

    async def get_by_workspace(
        self,
        workspace_id: str,
        product_source: Optional[ProductSource] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> List[EntityMention]:
        """Get mentions of a workspace, optionally for one product surface."""
        try:
            query = select(EntityMention).where(EntityMention.workspace_id == workspace_id)
            if product_source:
                query = query.where(EntityMention.product_source == product_source.value)
            query = query.order_by(EntityMention.created_at, EntityMention.id).offset(offset).limit(limit)

            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving mentions for workspace {workspace_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def get_by_product_source(
        self, workspace_id: str, product_source: ProductSource, limit: int = 500
    ) -> List[EntityMention]:
        return await self.get_by_workspace(workspace_id, product_source=product_source, limit=limit)

    async def count_by_entity(self, entity_id: str) -> int:
        return await self.count({"entity_id": entity_id})

    async def count_distinct_docs_by_entity(self, entity_id: str) -> int:
        try:
            result = await self.session.execute(
                select(func.count(func.distinct(EntityMention.doc_id))).where(
                    EntityMention.entity_id == entity_id
                )
            )
            return result.scalar_one()
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting docs for entity {entity_id}: {str(e)}", exc_info=True)
            raise

    async def delete_by_doc(self, doc_id: str) -> List[str]:
        """Delete all mentions of a document.

        Returns:
            Ids of the entities that lost mentions
        """
        try:
            affected = await self.session.execute(
                select(EntityMention.entity_id).where(EntityMention.doc_id == doc_id).distinct()
            )
            entity_ids = list(affected.scalars().all())

            await self.session.execute(delete(EntityMention).where(EntityMention.doc_id == doc_id))
            await self.session.commit()
            return entity_ids
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(f"Error deleting mentions for doc {doc_id}: {str(e)}", exc_info=True)
            raise

    async def delete_by_entity(self, entity_id: str) -> int:
        try:
            result = await self.session.execute(
                delete(EntityMention).where(EntityMention.entity_id == entity_id)
            )
            await self.session.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(f"Error deleting mentions for entity {entity_id}: {str(e)}", exc_info=True)
            raise

    async def cleanup_stale_entities(self, workspace_id: str) -> int:
        """Delete workspace entities that no longer have any mention.

        Their relationships are removed with them.

        Returns:
            Number of entities removed
        """
        try:
            has_mentions = exists().where(EntityMention.entity_id == WorkspaceEntity.id)
            stale = await self.session.execute(
                select(WorkspaceEntity.id).where(
                    WorkspaceEntity.workspace_id == workspace_id,
                    ~has_mentions,
                )
            )
            stale_ids = list(stale.scalars().all())
            if not stale_ids:
                return 0

            await self.session.execute(
                delete(EntityRelationship).where(
                    or_(
                        EntityRelationship.from_entity_id.in_(stale_ids),
                        EntityRelationship.to_entity_id.in_(stale_ids),
                    )
                )
            )
            await self.session.execute(delete(WorkspaceEntity).where(WorkspaceEntity.id.in_(stale_ids)))
            await self.session.commit()

            LOGGER.info(
                "Removed stale entities",
                extra={"workspace_id": workspace_id, "count": len(stale_ids)},
            )
            return len(stale_ids)
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error cleaning up stale entities for workspace {workspace_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def find_co_occurrence_rows(
        self, workspace_id: str, entity_id: Optional[str] = None
    ) -> List[Tuple[str, str, str]]:
        """Find (entity_a, entity_b, doc_id) triples for entities sharing a doc.

        Workspace-wide, each unordered pair appears once with
        ``entity_a < entity_b``. When ``entity_id`` is given, only pairs
        involving it are returned, with it as ``entity_a``.
        """
        em1 = aliased(EntityMention)
        em2 = aliased(EntityMention)
        try:
            query = (
                select(
                    em1.entity_id.label("entity_a_id"),
                    em2.entity_id.label("entity_b_id"),
                    em1.doc_id,
                )
                .join(em2, em1.doc_id == em2.doc_id)
                .where(
                    em1.workspace_id == workspace_id,
                    em2.workspace_id == workspace_id,
                    em1.doc_id.is_not(None),
                )
                .distinct()
            )
            if entity_id:
                query = query.where(em1.entity_id == entity_id, em2.entity_id != entity_id)
            else:
                query = query.where(em1.entity_id < em2.entity_id)

            result = await self.session.execute(query)
            return [(row[0], row[1], row[2]) for row in result.all()]
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error scanning co-occurrences for workspace {workspace_id}: {str(e)}",
                exc_info=True,
            )
            raise
