"""Database module for SQLAlchemy models and session management."""

from knowledge_graph.database.base import Base, async_session_maker, engine
from knowledge_graph.database.client import DatabaseClient, close_database, db_client, init_database
from knowledge_graph.database.models import EntityMention, EntityRelationship, WorkspaceEntity
from knowledge_graph.database.session import get_async_session

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_async_session",
    "DatabaseClient",
    "db_client",
    "init_database",
    "close_database",
    "WorkspaceEntity",
    "EntityMention",
    "EntityRelationship",
]
