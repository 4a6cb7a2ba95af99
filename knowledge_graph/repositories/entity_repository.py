"""Repository for workspace entities.

Entities are deduplicated on ``(workspace_id, normalized_name, entity_type)``.
Creation goes through :meth:`EntityRepository.get_or_create`, which is safe
against concurrent ingestion of the same new name.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import EntityLimitExceededError, ValidationError
from knowledge_graph.database.models import EntityMention, EntityRelationship, WorkspaceEntity
from knowledge_graph.repositories.base_repository import BaseRepository
from knowledge_graph.schemas.enums import EntityType
from knowledge_graph.utils.logging import get_logger
from knowledge_graph.utils.normalization import canonical_pair, generate_short_id, normalize_name

LOGGER = get_logger(__name__)

SORT_COLUMNS = {
    "doc_count": WorkspaceEntity.doc_count,
    "mention_count": WorkspaceEntity.mention_count,
    "name": WorkspaceEntity.name,
    "created_at": WorkspaceEntity.created_at,
}


class EntityRepository(BaseRepository[WorkspaceEntity]):
    """Repository for WorkspaceEntity rows."""

    def __init__(self, session: AsyncSession, config: Optional[KnowledgeGraphSettings] = None):
        super().__init__(session, WorkspaceEntity)
        self.config = config or settings.knowledge_graph

    async def get_by_normalized_name(
        self,
        workspace_id: str,
        normalized_name: str,
        entity_type: EntityType,
    ) -> Optional[WorkspaceEntity]:
        """Look up an entity by its dedup key."""
        try:
            query = select(WorkspaceEntity).where(
                WorkspaceEntity.workspace_id == workspace_id,
                WorkspaceEntity.normalized_name == normalized_name,
                WorkspaceEntity.entity_type == entity_type.value,
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving entity '{normalized_name}' ({entity_type.value}): {str(e)}",
                exc_info=True,
            )
            raise

    async def get_or_create(
        self,
        workspace_id: str,
        name: str,
        entity_type: EntityType,
        aliases: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[WorkspaceEntity, bool]:
        """Return the entity for a dedup key, creating it when absent.

        The insert is conflict-tolerant: when a concurrent caller creates the
        same entity first, the existing row is returned instead.

        Args:
            workspace_id: Owning workspace
            name: Display name (already trimmed)
            entity_type: Entity type
            aliases: Optional initial aliases
            metadata: Optional initial metadata

        Returns:
            Tuple of (entity, created)

        Raises:
            EntityLimitExceededError: If the workspace is at its entity quota
        """
        normalized = normalize_name(name)
        existing = await self.get_by_normalized_name(workspace_id, normalized, entity_type)
        if existing:
            return existing, False

        current = await self.count({"workspace_id": workspace_id})
        if current >= self.config.entity_limit:
            raise EntityLimitExceededError(workspace_id, current, self.config.entity_limit)

        now = datetime.now(timezone.utc)
        inserted_id = await self.insert_if_absent(
            id=generate_short_id(),
            workspace_id=workspace_id,
            entity_type=entity_type.value,
            name=name,
            normalized_name=normalized,
            aliases=aliases or [],
            entity_metadata=metadata or {},
            mention_count=0,
            doc_count=0,
            first_seen_at=now,
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )

        if inserted_id is None:
            LOGGER.debug(
                "Entity created concurrently, reusing existing row",
                extra={"workspace_id": workspace_id, "normalized_name": normalized},
            )
            existing = await self.get_by_normalized_name(workspace_id, normalized, entity_type)
            return existing, False

        entity = await self.get_by_id(inserted_id)
        LOGGER.debug(
            "Created workspace entity",
            extra={"entity_id": inserted_id, "entity_type": entity_type.value},
        )
        return entity, True

    async def list_by_workspace(
        self,
        workspace_id: str,
        entity_type: Optional[EntityType] = None,
        search: Optional[str] = None,
        sort: str = "doc_count",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> List[WorkspaceEntity]:
        """List entities of a workspace with optional filters and sorting."""
        try:
            query = select(WorkspaceEntity).where(WorkspaceEntity.workspace_id == workspace_id)

            if entity_type:
                query = query.where(WorkspaceEntity.entity_type == entity_type.value)
            if search:
                query = query.where(
                    WorkspaceEntity.normalized_name.contains(normalize_name(search), autoescape=True)
                )

            column = SORT_COLUMNS.get(sort, WorkspaceEntity.doc_count)
            query = query.order_by(column.asc() if order == "asc" else column.desc(), WorkspaceEntity.id)
            query = query.offset(offset).limit(limit)

            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error listing entities for workspace {workspace_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def search(self, workspace_id: str, query_text: str, limit: int = 20) -> List[WorkspaceEntity]:
        """Name search ranked by how many documents mention the entity."""
        return await self.list_by_workspace(
            workspace_id, search=query_text, sort="doc_count", order="desc", limit=limit
        )

    async def update(
        self,
        entity_id: str,
        name: Optional[str] = None,
        aliases: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[WorkspaceEntity]:
        """Update an entity's name, aliases or metadata.

        Renaming also refreshes the normalized name, so the entity's dedup
        key follows its display name.

        Returns:
            Updated entity, or None if it does not exist
        """
        try:
            entity = await self.get_by_id(entity_id)
            if not entity:
                return None

            if name is not None:
                entity.name = name.strip()
                entity.normalized_name = normalize_name(name)
            if aliases is not None:
                entity.aliases = list(aliases)
            if metadata is not None:
                entity.entity_metadata = dict(metadata)
            entity.updated_at = datetime.now(timezone.utc)

            await self.session.commit()
            await self.session.refresh(entity)
            return entity
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating entity {entity_id}: {str(e)}", exc_info=True)
            raise

    async def recalculate_counts(self, entity_id: str) -> None:
        """Recompute mention_count and doc_count from the mentions table."""
        try:
            counts = await self.session.execute(
                select(
                    func.count(EntityMention.id),
                    func.count(func.distinct(EntityMention.doc_id)),
                ).where(EntityMention.entity_id == entity_id)
            )
            mention_count, doc_count = counts.one()

            now = datetime.now(timezone.utc)
            await self.session.execute(
                update(WorkspaceEntity)
                .where(WorkspaceEntity.id == entity_id)
                .values(mention_count=mention_count, doc_count=doc_count, last_seen_at=now, updated_at=now)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"Error recalculating counts for entity {entity_id}: {str(e)}", exc_info=True)
            raise

    async def delete(self, id: str) -> bool:
        """Delete an entity together with its mentions and relationships."""
        try:
            entity = await self.get_by_id(id)
            if not entity:
                return False

            await self.session.execute(delete(EntityMention).where(EntityMention.entity_id == id))
            await self.session.execute(
                delete(EntityRelationship).where(
                    or_(EntityRelationship.from_entity_id == id, EntityRelationship.to_entity_id == id)
                )
            )
            await self.session.delete(entity)
            await self.session.commit()
            return True
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(f"Error deleting entity {id}: {str(e)}", exc_info=True)
            raise

    async def delete_by_workspace(self, workspace_id: str) -> int:
        """Remove the whole graph of a workspace. Returns deleted entity count."""
        try:
            await self.session.execute(
                delete(EntityRelationship).where(EntityRelationship.workspace_id == workspace_id)
            )
            await self.session.execute(delete(EntityMention).where(EntityMention.workspace_id == workspace_id))
            result = await self.session.execute(
                delete(WorkspaceEntity).where(WorkspaceEntity.workspace_id == workspace_id)
            )
            await self.session.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(f"Error deleting workspace {workspace_id} graph: {str(e)}", exc_info=True)
            raise

    async def merge(
        self,
        source_ids: List[str],
        target_id: str,
        merged_name: Optional[str] = None,
        merged_aliases: Optional[List[str]] = None,
    ) -> WorkspaceEntity:
        """Fold source entities into the target in a single transaction.

        Mentions and relationships move to the target; rows that would
        duplicate an existing target row, and relationships that would become
        self-loops, are dropped. Source names and aliases become target aliases.

        Returns:
            The updated target entity

        Raises:
            ValidationError: If ``merged_name`` collides with another entity of the same type
        """
        target = await self.get_by_id(target_id)
        sources = await self.get_by_ids(source_ids)
        source_set = set(sources)

        if merged_name and normalize_name(merged_name) != target.normalized_name:
            clash = await self.get_by_normalized_name(
                target.workspace_id, normalize_name(merged_name), EntityType(target.entity_type)
            )
            if clash and clash.id != target_id and clash.id not in source_set:
                raise ValidationError(
                    f"Merged name '{merged_name.strip()}' is already used by entity {clash.id}"
                )

        try:

            # Mentions
            target_keys = await self.session.execute(
                select(EntityMention.mention_key).where(EntityMention.entity_id == target_id)
            )
            seen_keys = set(target_keys.scalars().all())
            source_mentions = await self.session.execute(
                select(EntityMention).where(EntityMention.entity_id.in_(source_set))
            )
            for mention in source_mentions.scalars().all():
                if mention.mention_key in seen_keys:
                    await self.session.execute(delete(EntityMention).where(EntityMention.id == mention.id))
                    continue
                seen_keys.add(mention.mention_key)
                await self.session.execute(
                    update(EntityMention).where(EntityMention.id == mention.id).values(entity_id=target_id)
                )

            # Relationships
            touched = source_set | {target_id}
            rel_rows = await self.session.execute(
                select(EntityRelationship).where(
                    or_(
                        EntityRelationship.from_entity_id.in_(touched),
                        EntityRelationship.to_entity_id.in_(touched),
                    )
                )
            )
            relationships = list(rel_rows.scalars().all())
            seen_edges = {
                (r.from_entity_id, r.to_entity_id, r.relationship_type)
                for r in relationships
                if r.from_entity_id not in source_set and r.to_entity_id not in source_set
            }
            for rel in relationships:
                if rel.from_entity_id not in source_set and rel.to_entity_id not in source_set:
                    continue
                from_id = target_id if rel.from_entity_id in source_set else rel.from_entity_id
                to_id = target_id if rel.to_entity_id in source_set else rel.to_entity_id
                from_id, to_id = canonical_pair(from_id, to_id)
                edge = (from_id, to_id, rel.relationship_type)
                if from_id == to_id or edge in seen_edges:
                    await self.session.execute(
                        delete(EntityRelationship).where(EntityRelationship.id == rel.id)
                    )
                    continue
                seen_edges.add(edge)
                await self.session.execute(
                    update(EntityRelationship)
                    .where(EntityRelationship.id == rel.id)
                    .values(from_entity_id=from_id, to_entity_id=to_id)
                )

            # Aliases and name
            alias_pool = list(target.aliases or []) + [target.name]
            for source in sources.values():
                alias_pool.append(source.name)
                alias_pool.extend(source.aliases or [])
            alias_pool.extend(merged_aliases or [])
            final_name = merged_name.strip() if merged_name else target.name
            aliases: List[str] = []
            for alias in alias_pool:
                if normalize_name(alias) != normalize_name(final_name) and alias not in aliases:
                    aliases.append(alias)

            await self.session.execute(delete(WorkspaceEntity).where(WorkspaceEntity.id.in_(source_set)))
            await self.session.execute(
                update(WorkspaceEntity)
                .where(WorkspaceEntity.id == target_id)
                .values(
                    name=final_name,
                    normalized_name=normalize_name(final_name),
                    aliases=aliases,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error merging entities {source_ids} into {target_id}: {str(e)}",
                exc_info=True,
            )
            raise

        await self.recalculate_counts(target_id)
        LOGGER.info(
            "Merged entities",
            extra={"target_id": target_id, "source_count": len(source_set)},
        )
        merged = await self.get_by_id(target_id)
        await self.session.refresh(merged)
        return merged
