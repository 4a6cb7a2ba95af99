"""SQLAlchemy models for the knowledge graph tables."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from knowledge_graph.database.base import Base
from knowledge_graph.utils.normalization import generate_short_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkspaceEntity(Base):
    """Deduplicated named thing tracked per workspace."""

    __tablename__ = "workspace_entities"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_short_id)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="person, organization, term, etc."
    )
    name: Mapped[str] = mapped_column(String, nullable=False, comment="Display name as first seen")
    normalized_name: Mapped[str] = mapped_column(
        String, nullable=False, comment="NFC, trimmed, lowercased name"
    )
    aliases: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    entity_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    mention_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    doc_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_seen_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    last_seen_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "normalized_name", "entity_type", name="uq_workspace_entity_name_type"
        ),
        {"comment": "Workspace-scoped entities, deduplicated by normalized name and type"},
    )


class EntityMention(Base):
    """One observed occurrence of an entity in a product surface."""

    __tablename__ = "entity_mentions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_short_id)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("workspace_entities.id", ondelete="CASCADE"), nullable=False
    )
    doc_id: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Required when product_source is docs"
    )
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_path: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    source: Mapped[str] = mapped_column(String, nullable=False, default="extraction")
    product_source: Mapped[str] = mapped_column(String, nullable=False, default="docs")
    source_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    mention_key: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="Hash of product_source, doc_id, source_ref, field_path"
    )
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("entity_id", "mention_key", name="uq_entity_mention_key"),
        Index("ix_entity_mentions_doc_id", "doc_id"),
        Index("ix_entity_mentions_entity_id", "entity_id"),
        {"comment": "Entity occurrences; re-ingesting an identical mention is a no-op"},
    )


class EntityRelationship(Base):
    """Typed, scored edge between two workspace entities."""

    __tablename__ = "entity_relationships"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_short_id)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    from_entity_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("workspace_entities.id", ondelete="CASCADE"), nullable=False
    )
    to_entity_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("workspace_entities.id", ondelete="CASCADE"), nullable=False
    )
    relationship_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="co_occurrence, contractual, financial, etc."
    )
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    evidence: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list, comment="[{doc_id, context}]"
    )
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "from_entity_id", "to_entity_id", "relationship_type", name="uq_entity_relationship_pair_type"
        ),
        Index("ix_entity_relationships_to_entity_id", "to_entity_id"),
        {"comment": "Relationships stored in canonical direction (from_entity_id < to_entity_id)"},
    )
