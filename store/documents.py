"""Base model and field types for entities stored as documents."""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Type, TypeVar

from pydantic import BaseModel, ConfigDict, PlainSerializer

from . import DocumentSnapshot, DocumentNotFoundError

M = TypeVar('M', bound='DocumentModel')

def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string.

    Naive values are taken to be UTC. Fixed width keeps lexical order equal to
    chronological order, which is what ``order_by`` relies on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')

Timestamp = Annotated[datetime, PlainSerializer(format_timestamp, return_type=str, when_used='json')]

class DocumentModel(BaseModel):
    """Immutable entity keyed by its document id.

    The id is also stored in the body so it can be used in ``in`` filters.
    """
    model_config = ConfigDict(frozen=True)

    id: str = ''

    @classmethod
    def from_snapshot(cls: Type[M], snapshot: DocumentSnapshot) -> M:
        if not snapshot.exists:
            raise DocumentNotFoundError(f"Document {snapshot.ref.path} does not exist")
        return cls.model_validate({**snapshot.data, 'id': snapshot.id})

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

__all__ = ['DocumentModel', 'Timestamp', 'format_timestamp']
