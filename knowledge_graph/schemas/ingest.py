"""Ingestion payload schemas and the validation boundary.

The wire format is camelCase JSON. ``validate_ingest_payload`` checks a raw
payload and reports every problem as a ``{field, message}`` pair without
raising; only a payload that passes is turned into an ``IngestPayload``
whose fields are already typed enums.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from knowledge_graph.schemas.enums import EntityType, ProductSource, RelationshipType

PRODUCT_SOURCE_VALUES = [source.value for source in ProductSource]
ENTITY_TYPE_VALUES = {entity_type.value for entity_type in EntityType}
RELATIONSHIP_TYPE_VALUES = {rel_type.value for rel_type in RelationshipType}


class IngestValidationError(BaseModel):
    """A single problem found in an ingestion payload."""

    field: str = Field(..., description="Path of the offending field, e.g. entities[3].name")
    message: str = Field(..., description="Human-readable description")


class IngestEntity(BaseModel):
    """Entity observed by a product surface."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Entity name as it appears in the source")
    entity_type: EntityType = Field(..., alias="entityType")
    context: Optional[str] = Field(None, description="Text surrounding the mention")
    confidence: Optional[float] = Field(None, ge=0, le=1)
    source_ref: Optional[str] = Field(
        None, alias="sourceRef", description="Doc id for docs, product reference otherwise"
    )
    metadata: Optional[Dict[str, Any]] = None


class IngestRelationship(BaseModel):
    """Caller-asserted relationship between two named entities."""

    model_config = ConfigDict(populate_by_name=True)

    from_name: str = Field(..., alias="fromName")
    from_type: EntityType = Field(..., alias="fromType")
    to_name: str = Field(..., alias="toName")
    to_type: EntityType = Field(..., alias="toType")
    relationship_type: RelationshipType = Field(..., alias="relationshipType")
    label: Optional[str] = None
    evidence: Optional[str] = None


class IngestPayload(BaseModel):
    """Validated ingestion request."""

    model_config = ConfigDict(populate_by_name=True)

    product_source: ProductSource = Field(..., alias="productSource")
    entities: List[IngestEntity]
    relationships: List[IngestRelationship] = Field(default_factory=list)


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_ingest_payload(payload: Any, max_entities: int = 500) -> List[IngestValidationError]:
    """Check a raw ingestion payload.

    Args:
        payload: Decoded JSON body
        max_entities: Maximum number of entities accepted in one call

    Returns:
        List of validation errors; empty when the payload is acceptable
    """
    errors: List[IngestValidationError] = []

    def add(field: str, message: str) -> None:
        errors.append(IngestValidationError(field=field, message=message))

    if not isinstance(payload, dict):
        add("body", "payload must be a JSON object")
        return errors

    product_source = payload.get("productSource")
    if not product_source:
        add("productSource", "productSource is required")
    elif product_source not in PRODUCT_SOURCE_VALUES:
        add(
            "productSource",
            f"Invalid productSource: '{product_source}'. Must be one of: {', '.join(PRODUCT_SOURCE_VALUES)}",
        )

    entities = payload.get("entities")
    if not isinstance(entities, list):
        add("entities", "entities must be an array")
    elif not entities:
        add("entities", "entities array must not be empty")
    elif len(entities) > max_entities:
        add("entities", f"Maximum {max_entities} entities per ingest call")
    else:
        for i, entity in enumerate(entities):
            if not isinstance(entity, dict):
                add(f"entities[{i}]", "entity must be an object")
                continue
            if not _is_non_empty_string(entity.get("name")):
                add(f"entities[{i}].name", "name is required and must be a non-empty string")
            if entity.get("entityType") not in ENTITY_TYPE_VALUES:
                add(f"entities[{i}].entityType", f"Invalid entityType: '{entity.get('entityType')}'")
            confidence = entity.get("confidence")
            if confidence is not None and (not _is_number(confidence) or not 0 <= confidence <= 1):
                add(f"entities[{i}].confidence", "confidence must be a number between 0 and 1")

    relationships = payload.get("relationships")
    if relationships is not None:
        if not isinstance(relationships, list):
            add("relationships", "relationships must be an array")
        else:
            for i, rel in enumerate(relationships):
                if not isinstance(rel, dict):
                    add(f"relationships[{i}]", "relationship must be an object")
                    continue
                if not _is_non_empty_string(rel.get("fromName")):
                    add(f"relationships[{i}].fromName", "fromName is required")
                if rel.get("fromType") not in ENTITY_TYPE_VALUES:
                    add(f"relationships[{i}].fromType", f"Invalid fromType: '{rel.get('fromType')}'")
                if not _is_non_empty_string(rel.get("toName")):
                    add(f"relationships[{i}].toName", "toName is required")
                if rel.get("toType") not in ENTITY_TYPE_VALUES:
                    add(f"relationships[{i}].toType", f"Invalid toType: '{rel.get('toType')}'")
                if rel.get("relationshipType") not in RELATIONSHIP_TYPE_VALUES:
                    add(
                        f"relationships[{i}].relationshipType",
                        f"Invalid relationshipType: '{rel.get('relationshipType')}'",
                    )

    return errors


def parse_ingest_payload(payload: Dict[str, Any]) -> IngestPayload:
    """Build the typed payload from a raw one that passed validation."""
    return IngestPayload.model_validate(payload)
