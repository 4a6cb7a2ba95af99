"""Knowledge graph services: ingestion, relationship detection, deduplication and graph maintenance."""

from knowledge_graph.services.knowledge.cooccurrence import CoOccurrenceDetector, canonicalize_pair
from knowledge_graph.services.knowledge.entity_normalizer import EntityNormalizer, parse_ai_normalization_response
from knowledge_graph.services.knowledge.evidence import EvidenceGatherer, calculate_base_strength
from knowledge_graph.services.knowledge.graph_service import KnowledgeGraphService
from knowledge_graph.services.knowledge.memory_ingester import MemoryIngester
from knowledge_graph.services.knowledge.notifications import CrossProductNotifier
from knowledge_graph.services.knowledge.relationship_detector import RelationshipDetector
from knowledge_graph.services.knowledge.relationship_labeler import (
    RelationshipLabeler,
    parse_ai_relationship_response,
)

__all__ = [
    "CoOccurrenceDetector",
    "canonicalize_pair",
    "EntityNormalizer",
    "parse_ai_normalization_response",
    "EvidenceGatherer",
    "calculate_base_strength",
    "KnowledgeGraphService",
    "MemoryIngester",
    "CrossProductNotifier",
    "RelationshipDetector",
    "RelationshipLabeler",
    "parse_ai_relationship_response",
]
