"""Ingests entities and relationships reported by product surfaces.

Ingestion is best-effort: a bad entity or relationship is recorded in the
result's ``errors`` and the rest of the batch still goes through. Only quota
errors abort the call.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import QuotaExceededError
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.repositories.entity_repository import EntityRepository
from knowledge_graph.schemas.enums import EntityType, MentionSource, ProductSource
from knowledge_graph.schemas.ingest import IngestPayload, parse_ingest_payload, validate_ingest_payload
from knowledge_graph.schemas.knowledge import IngestResponse, IngestResult
from knowledge_graph.services.knowledge.notifications import CrossProductNotifier
from knowledge_graph.utils.logging import get_logger
from knowledge_graph.utils.normalization import entity_cache_key, normalize_name

LOGGER = get_logger(__name__)


class MemoryIngester:
    """Writes ingested entities, mentions and relationships to the graph."""

    def __init__(
        self,
        session: AsyncSession,
        config: Optional[KnowledgeGraphSettings] = None,
        notifier: Optional[CrossProductNotifier] = None,
    ):
        """Initialize the ingester.

        Args:
            session: Database session
            config: Quotas and tuning knobs
            notifier: Cross-product notification collaborator
        """
        self.session = session
        self.config = config or settings.knowledge_graph
        self.entity_repository = EntityRepository(session, self.config)
        self.mention_repository = EntityMentionRepository(session)
        self.relationship_repository = EntityRelationshipRepository(session, self.config)
        self.notifier = notifier or CrossProductNotifier(self.config.notification_rate_limit_per_hour)
        self._notification_tasks: Set[asyncio.Task] = set()

    async def ingest_raw(
        self,
        workspace_id: str,
        payload: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> IngestResponse:
        """Validate a raw payload and ingest it if it is acceptable.

        Nothing is written when validation fails.
        """
        errors = validate_ingest_payload(payload, self.config.max_entities_per_ingest)
        if errors:
            LOGGER.info(
                "Rejected ingestion payload",
                extra={"workspace_id": workspace_id, "error_count": len(errors)},
            )
            return IngestResponse(validation_errors=errors)

        result = await self.ingest(workspace_id, parse_ingest_payload(payload), actor_id)
        return IngestResponse(result=result)

    async def ingest(
        self,
        workspace_id: str,
        payload: IngestPayload,
        actor_id: Optional[str] = None,
    ) -> IngestResult:
        """Ingest a validated payload.

        Args:
            workspace_id: Target workspace
            payload: Validated payload
            actor_id: User on whose behalf the ingestion runs

        Returns:
            IngestResult with counts and per-item errors

        Raises:
            QuotaExceededError: If an entity or relationship quota is exhausted
        """
        result = IngestResult()
        product_source = payload.product_source
        entity_ids: Dict[str, str] = {}
        reused: Dict[str, str] = {}
        new_connections: List[Tuple[str, str, str, str]] = []

        for entity_input in payload.entities:
            try:
                normalized = normalize_name(entity_input.name)
                if not normalized:
                    result.errors.append(
                        f"Skipped entity with empty name after normalization: '{entity_input.name}'"
                    )
                    continue

                cache_key = entity_cache_key(normalized, entity_input.entity_type.value)
                entity_id = entity_ids.get(cache_key)
                if entity_id:
                    result.entities_reused += 1
                else:
                    entity, created = await self.entity_repository.get_or_create(
                        workspace_id,
                        entity_input.name.strip(),
                        entity_input.entity_type,
                        metadata=entity_input.metadata,
                    )
                    entity_id = entity.id
                    entity_ids[cache_key] = entity_id
                    if created:
                        result.entities_created += 1
                    else:
                        result.entities_reused += 1
                        reused[entity_id] = entity_input.name.strip()

                is_docs = product_source == ProductSource.DOCS
                mention = await self.mention_repository.create_if_absent(
                    workspace_id=workspace_id,
                    entity_id=entity_id,
                    product_source=product_source,
                    doc_id=entity_input.source_ref if is_docs else None,
                    context=entity_input.context,
                    confidence=entity_input.confidence,
                    source=MentionSource.AI_INDEX,
                    source_ref=None if is_docs else entity_input.source_ref,
                )
                if mention:
                    result.mentions_created += 1
                    await self.entity_repository.recalculate_counts(entity_id)
            except QuotaExceededError:
                raise
            except Exception as e:
                await self.session.rollback()
                LOGGER.warning(
                    "Failed to ingest entity",
                    exc_info=True,
                    extra={"workspace_id": workspace_id, "entity_name": entity_input.name},
                )
                result.errors.append(f"Entity '{entity_input.name}': {e}")

        for rel_input in payload.relationships:
            try:
                from_id = await self._resolve_entity(
                    workspace_id, rel_input.from_name, rel_input.from_type, entity_ids
                )
                if not from_id:
                    result.errors.append(
                        f"Relationship skipped: entity '{rel_input.from_name}' "
                        f"({rel_input.from_type.value}) not found"
                    )
                    continue
                to_id = await self._resolve_entity(
                    workspace_id, rel_input.to_name, rel_input.to_type, entity_ids
                )
                if not to_id:
                    result.errors.append(
                        f"Relationship skipped: entity '{rel_input.to_name}' "
                        f"({rel_input.to_type.value}) not found"
                    )
                    continue

                evidence = [{"doc_id": "", "context": rel_input.evidence}] if rel_input.evidence else []
                relationship = await self.relationship_repository.create_if_absent(
                    workspace_id,
                    from_id,
                    to_id,
                    rel_input.relationship_type,
                    label=rel_input.label,
                    strength=0.5,
                    evidence=evidence,
                )
                if relationship:
                    result.relationships_created += 1
                    new_connections.append((from_id, rel_input.from_name, to_id, rel_input.to_name))
            except QuotaExceededError:
                raise
            except Exception as e:
                await self.session.rollback()
                LOGGER.warning(
                    "Failed to ingest relationship",
                    exc_info=True,
                    extra={"workspace_id": workspace_id},
                )
                result.errors.append(f"Relationship '{rel_input.from_name}' -> '{rel_input.to_name}': {e}")

        LOGGER.info(
            "Ingestion finished",
            extra={
                "workspace_id": workspace_id,
                "product_source": product_source.value,
                "entities_created": result.entities_created,
                "entities_reused": result.entities_reused,
                "mentions_created": result.mentions_created,
                "relationships_created": result.relationships_created,
                "error_count": len(result.errors),
            },
        )

        if reused or new_connections:
            self._dispatch_notifications(workspace_id, product_source, reused, new_connections, actor_id)

        return result

    async def wait_for_notifications(self) -> None:
        """Wait until dispatched notification tasks have finished."""
        if self._notification_tasks:
            await asyncio.gather(*self._notification_tasks, return_exceptions=True)

    async def _resolve_entity(
        self,
        workspace_id: str,
        name: str,
        entity_type: EntityType,
        entity_ids: Dict[str, str],
    ) -> Optional[str]:
        normalized = normalize_name(name)
        cache_key = entity_cache_key(normalized, entity_type.value)
        if cache_key in entity_ids:
            return entity_ids[cache_key]

        entity = await self.entity_repository.get_by_normalized_name(workspace_id, normalized, entity_type)
        if entity is None:
            return None
        entity_ids[cache_key] = entity.id
        return entity.id

    def _dispatch_notifications(
        self,
        workspace_id: str,
        product_source: ProductSource,
        reused: Dict[str, str],
        new_connections: List[Tuple[str, str, str, str]],
        actor_id: Optional[str],
    ) -> None:
        task = asyncio.create_task(
            self._send_notifications(workspace_id, product_source, reused, new_connections, actor_id)
        )
        self._notification_tasks.add(task)
        task.add_done_callback(self._on_notification_done)

    async def _send_notifications(
        self,
        workspace_id: str,
        product_source: ProductSource,
        reused: Dict[str, str],
        new_connections: List[Tuple[str, str, str, str]],
        actor_id: Optional[str],
    ) -> None:
        for entity_id, name in reused.items():
            await self.notifier.notify_entity_ingest(
                workspace_id, entity_id, name, product_source.value, actor_id
            )
        for from_id, from_name, to_id, to_name in new_connections:
            await self.notifier.notify_new_connection(
                workspace_id, from_id, from_name, to_id, to_name, product_source.value, actor_id
            )

    def _on_notification_done(self, task: asyncio.Task) -> None:
        self._notification_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            LOGGER.warning(
                f"Cross-product notification failed (non-fatal): {error}",
                exc_info=error,
            )
