from typing import Optional


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass

class APITimeoutError(APIClientError):
    """Raised when an external API call times out."""
    pass

class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass

class ValidationError(AppError):
    """Raised when input validation fails."""
    pass

class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass

class EntityNotFoundError(AppError):
    """Raised when a referenced entity does not exist."""
    def __init__(self, entity_id: str):
        super().__init__(f"Entity not found: {entity_id}")
        self.entity_id = entity_id

class QuotaExceededError(AppError):
    """Raised when a workspace quota would be exceeded.

    Quota errors are the only failures the knowledge services let escape,
    so callers can reject the whole operation.
    """
    label = "Item"
    plural = "items"

    def __init__(self, workspace_id: str, current_count: int, limit: int, original_error: Optional[Exception] = None):
        super().__init__(
            f"{self.label} limit reached: workspace {workspace_id} "
            f"has {current_count} {self.plural} (max {limit})",
            original_error,
        )
        self.workspace_id = workspace_id
        self.current_count = current_count
        self.limit = limit

class RelationshipLimitExceededError(QuotaExceededError):
    """Raised when a workspace already holds the maximum number of relationships."""
    label = "Relationship"
    plural = "relationships"

class EntityLimitExceededError(QuotaExceededError):
    """Raised when a workspace already holds the maximum number of entities."""
    label = "Entity"
    plural = "entities"
