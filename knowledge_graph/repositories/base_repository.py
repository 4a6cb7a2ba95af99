from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.utils.logging import get_logger

# Define a generic type for SQLAlchemy models
ModelType = TypeVar("ModelType")

LOGGER = get_logger(__name__)


class BaseRepository(Generic[ModelType]):
    """Base repository implementing common CRUD operations.

    Besides plain reads, it exposes ``insert_if_absent`` which relies on the
    table's unique constraints: a conflicting insert affects zero rows and
    returns ``None`` instead of raising.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """Initialize the repository.

        Args:
            session: SQLAlchemy async session
            model: The SQLAlchemy model class this repository manages
        """
        self.session = session
        self.model = model
        self.logger = LOGGER

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a record by its ID.

        Args:
            id: The short id of the record

        Returns:
            The record if found, None otherwise
        """
        try:
            query = select(self.model).where(self.model.id == id)
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving {self.model.__name__} by ID {id}: {str(e)}",
                exc_info=True
            )
            raise

    async def get_by_ids(self, ids: List[str]) -> Dict[str, ModelType]:
        """Get several records at once, keyed by id. Missing ids are absent."""
        if not ids:
            return {}
        try:
            query = select(self.model).where(self.model.id.in_(set(ids)))
            result = await self.session.execute(query)
            return {row.id: row for row in result.scalars().all()}
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving {self.model.__name__} batch: {str(e)}",
                exc_info=True
            )
            raise

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records matching optional equality filters."""
        try:
            query = select(func.count()).select_from(self.model)

            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        query = query.where(getattr(self.model, field) == value)

            result = await self.session.execute(query)
            return result.scalar_one()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error counting {self.model.__name__}: {str(e)}",
                exc_info=True
            )
            raise

    async def insert_if_absent(self, **values: Any) -> Optional[str]:
        """Insert a row unless it violates a unique constraint.

        Args:
            **values: Column values, including the generated ``id``

        Returns:
            The new row id, or None when an equivalent row already exists
        """
        try:
            dialect = self.session.bind.dialect.name if self.session.bind is not None else "postgresql"
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert

            stmt = (
                insert(self.model)
                .values(**values)
                .on_conflict_do_nothing()
                .returning(self.model.id)
            )
            result = await self.session.execute(stmt)
            inserted_id = result.scalar_one_or_none()
            await self.session.commit()
            return inserted_id
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error inserting {self.model.__name__}: {str(e)}",
                exc_info=True
            )
            raise

    async def delete(self, id: str) -> bool:
        """Delete a record by ID.

        Returns:
            True if deleted, False if not found
        """
        try:
            db_obj = await self.get_by_id(id)
            if not db_obj:
                return False

            await self.session.delete(db_obj)
            await self.session.commit()
            return True
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error deleting {self.model.__name__} {id}: {str(e)}",
                exc_info=True
            )
            raise
