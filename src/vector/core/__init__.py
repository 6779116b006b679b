"""
Core subpackage for the chat vector store.

Contains exceptions, cancellation, locking, logging and configuration.
"""

from .cancellation import CancellationToken
from .exceptions import (
    VectorStoreError,
    NoOpenChatError,
    ChatNotFoundError,
    StorageIOError,
    SerializationError,
    OperationCancelledError,
    ConfigError,
)
from .locks import ReadWriteLock

__all__ = [
    "CancellationToken",
    "ReadWriteLock",
    # Exceptions
    "VectorStoreError",
    "NoOpenChatError",
    "ChatNotFoundError",
    "StorageIOError",
    "SerializationError",
    "OperationCancelledError",
    "ConfigError",
]
