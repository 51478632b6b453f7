"""Database exceptions."""

class DatabaseError(Exception):
    """Base exception for database failures."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when the schema cannot be loaded or applied."""
    pass

__all__ = ['DatabaseError', 'DatabaseSchemaError']
