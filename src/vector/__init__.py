"""
Chat Vector Store

Embedded persistence and similarity retrieval for a terminal RAG chat
assistant. Each chat lives in its own directory: JSON metadata next to an
embedded key-value database of messages, documents, chunks and user
profile facts.

Key components:
- contracts/: Data models (Chat, Message, Document, DocumentChunk, ProfileFact)
- core/: Exceptions, configuration, logging, cancellation and locking
- store.py: ChatStore, the single-open-chat storage interface
- hnsw.py: In-memory approximate nearest neighbor index
- retrieval.py: Similarity ranking and the hybrid message/chunk allocation
- backfill.py: Deferred embedding writes
- cli.py: Inspection CLI

Key concepts:
- Open chat: At most one chat has an open database handle at a time.
- Hybrid retrieval: A top-K budget split between messages and chunks, with
  an empty pool handing its share to the other.
"""

from .backfill import BackfillWorker, schedule_embedding_backfill
from .contracts.models import (
    Chat,
    Document,
    DocumentChunk,
    FactSource,
    Message,
    MessageRole,
    ProfileFact,
    UserProfile,
)
from .core.cancellation import CancellationToken
from .core.config import StoreConfig
from .core.exceptions import (
    ChatNotFoundError,
    ConfigError,
    NoOpenChatError,
    OperationCancelledError,
    SerializationError,
    StorageIOError,
    VectorStoreError,
)
from .hnsw import HNSWConfig, HNSWIndex
from .retrieval import HybridResult, RetrievalHit
from .session import ChatSession
from .similarity import cosine_similarity
from .store import ChatStore

__version__ = "0.1.0"

__all__ = [
    "ChatStore",
    "ChatSession",
    "StoreConfig",
    "CancellationToken",
    "HNSWConfig",
    "HNSWIndex",
    "HybridResult",
    "RetrievalHit",
    "cosine_similarity",
    "schedule_embedding_backfill",
    "BackfillWorker",
    # Models
    "Chat",
    "Message",
    "MessageRole",
    "Document",
    "DocumentChunk",
    "ProfileFact",
    "FactSource",
    "UserProfile",
    # Exceptions
    "VectorStoreError",
    "NoOpenChatError",
    "ChatNotFoundError",
    "StorageIOError",
    "SerializationError",
    "OperationCancelledError",
    "ConfigError",
]
