from .changes import Change, Operation, changes_from_mapping
from .exceptions import (
    BindError,
    BusyExceededError,
    DeleteError,
    DirectoryConnectionError,
    DirectoryError,
    EntryExistsError,
    MoveError,
    NotFoundError,
    ProtocolError,
    TransportError,
    UpsertConflictError,
)
from .options import SessionOptions
from .records import Record
from .registry import SessionRegistry
from .session import DirectorySession

__version__ = "1.0.0"

__all__ = [
    "BindError",
    "BusyExceededError",
    "Change",
    "DeleteError",
    "DirectoryConnectionError",
    "DirectoryError",
    "DirectorySession",
    "EntryExistsError",
    "MoveError",
    "NotFoundError",
    "Operation",
    "ProtocolError",
    "Record",
    "SessionOptions",
    "SessionRegistry",
    "TransportError",
    "UpsertConflictError",
    "changes_from_mapping",
]
