"""
Custom exceptions for the chat vector store.
"""


class VectorStoreError(Exception):
    """Base exception for all vector store errors."""
    pass


class NoOpenChatError(VectorStoreError):
    """
    Operation requires an open chat.
    
    Raised when a chat-scoped read or write is issued before
    ``open_chat`` has succeeded, or after the chat was closed.
    """
    
    def __init__(self, message: str = "no chat is currently open"):
        super().__init__(message)


class ChatNotFoundError(VectorStoreError):
    """Chat metadata (or the chat directory) does not exist."""
    
    def __init__(self, chat_id: str, message: str = None):
        super().__init__(message or f"chat not found: {chat_id}")
        self.chat_id = chat_id


class StorageIOError(VectorStoreError):
    """
    Error reading or writing the filesystem or the embedded database.
    
    Raised when:
    - A chat directory cannot be created or removed
    - The embedded database cannot be opened (e.g. locked by another process)
    - A read scan or write commit fails
    """
    
    def __init__(self, message: str, operation: str = None):
        super().__init__(message)
        self.operation = operation


class SerializationError(VectorStoreError):
    """JSON encode/decode failure on a single record."""
    
    def __init__(self, message: str, record_key: str = None):
        super().__init__(message)
        self.record_key = record_key


class OperationCancelledError(VectorStoreError):
    """
    A blocking storage call was aborted.
    
    Raised when the caller's cancellation token fires, or its deadline
    passes, while the call waits for a lock or performs I/O.
    """
    pass


class ConfigError(VectorStoreError):
    """
    Error in store configuration.
    
    Raised when:
    - Configuration file is unreadable or not a mapping
    - Configuration values are out of valid range
    """
    pass
