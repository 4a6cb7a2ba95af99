"""Closed value sets used across the knowledge graph.

Raw strings are converted to these enums once, at the ingestion boundary;
everything downstream works with enum members only.
"""

from enum import Enum


class EntityType(str, Enum):
    """Kinds of entity tracked per workspace."""
    PERSON = "person"
    ORGANIZATION = "organization"
    DATE = "date"
    AMOUNT = "amount"
    LOCATION = "location"
    PRODUCT = "product"
    TERM = "term"
    CONCEPT = "concept"
    WEB_PAGE = "web_page"
    RESEARCH_SOURCE = "research_source"
    DESIGN_ASSET = "design_asset"
    EVENT = "event"
    CITATION = "citation"


class RelationshipType(str, Enum):
    """Kinds of edge between two entities."""
    CO_OCCURRENCE = "co_occurrence"
    CONTRACTUAL = "contractual"
    FINANCIAL = "financial"
    ORGANIZATIONAL = "organizational"
    TEMPORAL = "temporal"
    CUSTOM = "custom"


class ProductSource(str, Enum):
    """Product surface a mention was observed in."""
    DOCS = "docs"
    DESIGN_STUDIO = "design-studio"
    RESEARCH = "research"
    NOTES = "notes"
    SHEETS = "sheets"


class MentionSource(str, Enum):
    """How a mention was produced."""
    EXTRACTION = "extraction"
    MANUAL = "manual"
    AI_INDEX = "ai_index"
