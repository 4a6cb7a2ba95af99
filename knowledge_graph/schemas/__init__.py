from .enums import EntityType, MentionSource, ProductSource, RelationshipType
from .ingest import IngestPayload, IngestValidationError, validate_ingest_payload
from .knowledge import DetectionResult, DetectionState, IngestResponse, IngestResult

__all__ = [
    "EntityType",
    "MentionSource",
    "ProductSource",
    "RelationshipType",
    "IngestPayload",
    "IngestValidationError",
    "validate_ingest_payload",
    "DetectionResult",
    "DetectionState",
    "IngestResponse",
    "IngestResult",
]
