"""Repositories for the knowledge graph tables."""

from knowledge_graph.repositories.base_repository import BaseRepository
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.repositories.entity_repository import EntityRepository

__all__ = [
    "BaseRepository",
    "EntityRepository",
    "EntityMentionRepository",
    "EntityRelationshipRepository",
]
