"""Result and read-model schemas for the knowledge graph services."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from knowledge_graph.schemas.enums import RelationshipType
from knowledge_graph.schemas.ingest import IngestValidationError


class IngestResult(BaseModel):
    """Counts and per-item errors of one ingestion call."""

    entities_created: int = 0
    entities_reused: int = 0
    mentions_created: int = 0
    relationships_created: int = 0
    errors: List[str] = Field(default_factory=list)


class IngestResponse(BaseModel):
    """Outcome of validating and, if valid, ingesting a raw payload."""

    validation_errors: List[IngestValidationError] = Field(default_factory=list)
    result: Optional[IngestResult] = None


class EvidenceSnippet(BaseModel):
    """Context supporting a relationship, as stored in the evidence blob."""

    doc_id: str
    context: str


class CoOccurrencePair(BaseModel):
    """Two entities that share documents, in canonical direction."""

    entity_a_id: str
    entity_a_name: str
    entity_a_type: str
    entity_a_aliases: List[str] = Field(default_factory=list)
    entity_b_id: str
    entity_b_name: str
    entity_b_type: str
    entity_b_aliases: List[str] = Field(default_factory=list)
    shared_doc_ids: List[str]
    shared_doc_count: int


class AiRelationshipResult(BaseModel):
    """One parsed line of the labeling response."""

    relationship_type: RelationshipType
    label: str
    confidence: int
    reason: str


class DetectionState(str, Enum):
    """Stages of a detection pass."""
    IDLE = "idle"
    SCANNING = "scanning"
    SCORING = "scoring"
    AI_LABELING = "ai_labeling"
    DONE = "done"


class DetectionResult(BaseModel):
    """Summary of a full or incremental relationship detection pass."""

    co_occurrences_found: int = 0
    ai_labeled: int = 0
    relationships_created: int = 0
    relationships_updated: int = 0
    errors: List[str] = Field(default_factory=list)
    state: DetectionState = DetectionState.IDLE


class EntityResponse(BaseModel):
    """Entity read model."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    workspace_id: str
    entity_type: str
    name: str
    normalized_name: str
    aliases: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="entity_metadata")
    mention_count: int
    doc_count: int
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


class RelationshipResponse(BaseModel):
    """Relationship read model."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    from_entity_id: str
    to_entity_id: str
    relationship_type: str
    label: Optional[str] = None
    strength: float
    evidence: List[Dict[str, Any]] = Field(default_factory=list)


class EntityNeighborhood(BaseModel):
    """An entity with its relationships and the entities on their far side."""

    entity: EntityResponse
    relationships: List[RelationshipResponse]
    neighbors: List[EntityResponse]


class MergeEntitiesRequest(BaseModel):
    """Request body for merging entities."""

    source_entity_ids: List[str] = Field(..., min_length=1)
    target_entity_id: str
    merged_name: Optional[str] = None
    merged_aliases: Optional[List[str]] = None


class DuplicateCandidate(BaseModel):
    """Two same-type entities whose names look alike."""

    entity_a: EntityResponse
    entity_b: EntityResponse
    string_similarity: float


class AiNormalizationResult(BaseModel):
    """One parsed line of the deduplication response."""

    score: int
    canonical_name: str
    reason: str


class NormalizationSuggestion(BaseModel):
    """A proposed merge of two entities."""

    entity_a: EntityResponse
    entity_b: EntityResponse
    confidence: int
    recommended_name: str
    reason: str
    auto_merge: bool


class NormalizationResult(BaseModel):
    """Summary of a duplicate-entity pass over a workspace."""

    workspace_id: str
    candidates_found: int = 0
    ai_compared: int = 0
    suggestions_generated: int = 0
    auto_merged: int = 0
    errors: List[str] = Field(default_factory=list)
    suggestions: List[NormalizationSuggestion] = Field(default_factory=list)


class DocumentCleanupResult(BaseModel):
    """Outcome of removing a document's mentions from the graph."""

    entities_recounted: int
    entities_removed: int
