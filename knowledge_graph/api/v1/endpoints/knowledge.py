"""Knowledge graph routes: ingestion, relationship detection, deduplication and graph lookups."""

from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import (
    ConfigurationError,
    EntityNotFoundError,
    QuotaExceededError,
    ValidationError,
)
from knowledge_graph.core.unified_llm import LLMProvider, UnifiedLLMClient, create_llm_client_from_settings
from knowledge_graph.database.session import get_async_session
from knowledge_graph.schemas.enums import EntityType
from knowledge_graph.schemas.knowledge import (
    DetectionResult,
    DocumentCleanupResult,
    EntityNeighborhood,
    EntityResponse,
    IngestResult,
    MergeEntitiesRequest,
    NormalizationResult,
)
from knowledge_graph.services.knowledge.entity_normalizer import EntityNormalizer
from knowledge_graph.services.knowledge.graph_service import KnowledgeGraphService
from knowledge_graph.services.knowledge.memory_ingester import MemoryIngester
from knowledge_graph.services.knowledge.notifications import CrossProductNotifier
from knowledge_graph.services.knowledge.relationship_detector import RelationshipDetector
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)

router = APIRouter()

# Shared so the per-entity rate limit spans requests
_notifier = CrossProductNotifier(settings.knowledge_graph.notification_rate_limit_per_hour)
_llm_client: Optional[UnifiedLLMClient] = None


def get_knowledge_settings() -> KnowledgeGraphSettings:
    return settings.knowledge_graph


def get_llm_client() -> UnifiedLLMClient:
    """Shared compose client.

    A provider that is not usable with the current settings degrades to the
    offline ``dev`` provider, so detection still runs its deterministic stage.
    """
    global _llm_client
    if _llm_client is None:
        try:
            _llm_client = create_llm_client_from_settings(settings.llm)
        except ConfigurationError as e:
            LOGGER.warning(
                "AI labeling disabled, falling back to offline provider",
                extra={"provider": settings.llm.provider, "error": str(e)},
            )
            _llm_client = UnifiedLLMClient(provider=LLMProvider.DEV)
    return _llm_client


async def get_memory_ingester(
    db_session: Annotated[AsyncSession, Depends(get_async_session)],
    config: Annotated[KnowledgeGraphSettings, Depends(get_knowledge_settings)],
) -> MemoryIngester:
    return MemoryIngester(db_session, config, notifier=_notifier)


async def get_relationship_detector(
    db_session: Annotated[AsyncSession, Depends(get_async_session)],
    llm_client: Annotated[UnifiedLLMClient, Depends(get_llm_client)],
    config: Annotated[KnowledgeGraphSettings, Depends(get_knowledge_settings)],
) -> RelationshipDetector:
    return RelationshipDetector(db_session, llm_client, config)


async def get_graph_service(
    db_session: Annotated[AsyncSession, Depends(get_async_session)],
    config: Annotated[KnowledgeGraphSettings, Depends(get_knowledge_settings)],
) -> KnowledgeGraphService:
    return KnowledgeGraphService(db_session, config)


async def get_entity_normalizer(
    db_session: Annotated[AsyncSession, Depends(get_async_session)],
    llm_client: Annotated[UnifiedLLMClient, Depends(get_llm_client)],
    config: Annotated[KnowledgeGraphSettings, Depends(get_knowledge_settings)],
) -> EntityNormalizer:
    return EntityNormalizer(db_session, llm_client, config)


def _not_found(error: EntityNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "EntityNotFound", "message": str(error)},
    )


@router.post(
    "/workspaces/{workspace_id}/ingest",
    response_model=IngestResult,
    summary="Ingest entities and relationships from a product surface",
    operation_id="ingest_workspace_memory",
)
async def ingest_memory(
    workspace_id: str,
    ingester: Annotated[MemoryIngester, Depends(get_memory_ingester)],
    payload: Annotated[Dict[str, Any], Body(...)],
    actor_id: Optional[str] = Query(None, description="User the ingestion is performed for"),
) -> IngestResult:
    """Validate and ingest a payload.

    Raises:
        HTTPException: 400 on validation errors, 409 when a quota is exhausted
    """
    try:
        response = await ingester.ingest_raw(workspace_id, payload, actor_id)
    except QuotaExceededError as e:
        LOGGER.warning("Ingestion rejected by quota", extra={"workspace_id": workspace_id, "error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": type(e).__name__, "message": str(e), "current_count": e.current_count},
        )

    if response.validation_errors:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "ValidationError",
                "message": "Invalid ingestion payload",
                "details": [error.model_dump() for error in response.validation_errors],
            },
        )
    return response.result


@router.post(
    "/workspaces/{workspace_id}/relationships/detect",
    response_model=DetectionResult,
    summary="Run full relationship detection for a workspace",
    operation_id="detect_workspace_relationships",
)
async def detect_relationships(
    workspace_id: str,
    detector: Annotated[RelationshipDetector, Depends(get_relationship_detector)],
) -> DetectionResult:
    return await detector.detect_workspace_relationships(workspace_id)


@router.post(
    "/entities/{entity_id}/relationships/refresh",
    response_model=DetectionResult,
    summary="Recompute relationships of a single entity",
    operation_id="refresh_entity_relationships",
)
async def refresh_entity_relationships(
    entity_id: str,
    graph_service: Annotated[KnowledgeGraphService, Depends(get_graph_service)],
    detector: Annotated[RelationshipDetector, Depends(get_relationship_detector)],
) -> DetectionResult:
    try:
        entity = await graph_service.get_entity(entity_id)
    except EntityNotFoundError as e:
        raise _not_found(e)
    return await detector.update_relationships_for_entity(entity.id, entity.workspace_id)


@router.get(
    "/entities/{entity_id}/neighborhood",
    response_model=EntityNeighborhood,
    summary="Get an entity with its related entities",
    operation_id="get_entity_neighborhood",
)
async def get_entity_neighborhood(
    entity_id: str,
    graph_service: Annotated[KnowledgeGraphService, Depends(get_graph_service)],
    min_strength: float = Query(0.0, ge=0, le=1),
    limit: int = Query(50, ge=1, le=500),
) -> EntityNeighborhood:
    try:
        return await graph_service.get_entity_neighborhood(entity_id, min_strength=min_strength, limit=limit)
    except EntityNotFoundError as e:
        raise _not_found(e)


@router.get(
    "/workspaces/{workspace_id}/entities",
    response_model=List[EntityResponse],
    summary="List workspace entities",
    operation_id="list_workspace_entities",
)
async def list_entities(
    workspace_id: str,
    graph_service: Annotated[KnowledgeGraphService, Depends(get_graph_service)],
    entity_type: Optional[EntityType] = None,
    search: Optional[str] = None,
    sort: str = Query("doc_count", pattern="^(doc_count|mention_count|name|created_at)$"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[EntityResponse]:
    entities = await graph_service.list_entities(
        workspace_id,
        entity_type=entity_type,
        search=search,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )
    return [EntityResponse.model_validate(entity) for entity in entities]


@router.post(
    "/workspaces/{workspace_id}/entities/merge",
    response_model=EntityResponse,
    summary="Merge entities into a target entity",
    operation_id="merge_workspace_entities",
)
async def merge_entities(
    workspace_id: str,
    request: MergeEntitiesRequest,
    graph_service: Annotated[KnowledgeGraphService, Depends(get_graph_service)],
) -> EntityResponse:
    try:
        merged = await graph_service.merge_entities(workspace_id, request)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "ValidationError", "message": str(e)},
        )
    except EntityNotFoundError as e:
        raise _not_found(e)
    return EntityResponse.model_validate(merged)


@router.post(
    "/workspaces/{workspace_id}/entities/normalize",
    response_model=NormalizationResult,
    summary="Find duplicate entities and merge the clear matches",
    operation_id="normalize_workspace_entities",
)
async def normalize_entities(
    workspace_id: str,
    normalizer: Annotated[EntityNormalizer, Depends(get_entity_normalizer)],
    auto_merge: bool = Query(True, description="Merge pairs scored as near-certain duplicates"),
    entity_type: Optional[EntityType] = None,
) -> NormalizationResult:
    return await normalizer.normalize_workspace_entities(
        workspace_id, auto_merge=auto_merge, entity_type=entity_type
    )


@router.delete(
    "/entities/{entity_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an entity with its mentions and relationships",
    operation_id="delete_entity",
)
async def delete_entity(
    entity_id: str,
    graph_service: Annotated[KnowledgeGraphService, Depends(get_graph_service)],
) -> None:
    try:
        await graph_service.delete_entity(entity_id)
    except EntityNotFoundError as e:
        raise _not_found(e)


@router.delete(
    "/workspaces/{workspace_id}/documents/{doc_id}/mentions",
    response_model=DocumentCleanupResult,
    summary="Remove a document's mentions from the graph",
    operation_id="delete_document_mentions",
)
async def delete_document_mentions(
    workspace_id: str,
    doc_id: str,
    graph_service: Annotated[KnowledgeGraphService, Depends(get_graph_service)],
) -> DocumentCleanupResult:
    return await graph_service.delete_document_mentions(workspace_id, doc_id)
