"""
Chat Store Data Models

Records persisted by the chat store:
- Chat            -> <base_dir>/<chat_id>/metadata.json
- Message         -> key "msg:<id>"
- Document        -> key "doc:<id>"
- DocumentChunk   -> key "chunk:<id>"
- UserProfile     -> key "profile:<chat_id>"
- ProfileFact     -> key "profile_fact:<chat_id>:<key>"

All records serialize to JSON through ``to_dict`` / ``from_dict``.
Timestamps are timezone-aware UTC and stored as ISO-8601 strings.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import time


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or pass a datetime through) as aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime) -> str:
    return value.isoformat()


def _embedding_from(value: Any) -> List[float]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("embedding must be a list")
    return [float(v) for v in value]


class MessageRole(str, Enum):
    """Role of a stored message."""
    USER = "user"
    ASSISTANT = "assistant"
    CONTEXT = "context"


class FactSource(str, Enum):
    """How a profile fact was obtained."""
    EXPLICIT = "explicit"
    INFERRED = "inferred"


@dataclass
class Chat:
    """
    Chat metadata, stored independently of the chat's message database.

    Attributes:
        id: Chat identifier (also the directory name)
        name: Display name
        system_prompt: System prompt for generation
        llm_model: Completion model name
        embed_model: Embedding model name
        created_at: Creation timestamp
        temperature: Sampling temperature
        top_k: Retrieval depth
        use_reranking: Whether LLM-based reranking is enabled
        max_tokens: Maximum tokens in a response
        context_window: Total context window (input + output tokens)
        file_count: Number of files loaded into the chat
    """
    id: str
    name: str
    system_prompt: str = ""
    llm_model: str = ""
    embed_model: str = ""
    created_at: datetime = field(default_factory=utc_now)
    temperature: float = 0.7
    top_k: int = 5
    use_reranking: bool = True
    max_tokens: int = 2048
    context_window: int = 4096
    file_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "system_prompt": self.system_prompt,
            "llm_model": self.llm_model,
            "embed_model": self.embed_model,
            "created_at": _format_timestamp(self.created_at),
            "temperature": self.temperature,
            "top_k": self.top_k,
            "use_reranking": self.use_reranking,
            "max_tokens": self.max_tokens,
            "context_window": self.context_window,
            "file_count": self.file_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chat":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            system_prompt=data.get("system_prompt", ""),
            llm_model=data.get("llm_model", ""),
            embed_model=data.get("embed_model", ""),
            created_at=parse_timestamp(data["created_at"]),
            temperature=float(data.get("temperature", 0.7)),
            top_k=int(data.get("top_k", 5)),
            use_reranking=bool(data.get("use_reranking", True)),
            max_tokens=int(data.get("max_tokens", 2048)),
            context_window=int(data.get("context_window", 4096)),
            file_count=int(data.get("file_count", 0)),
        )

    @classmethod
    def create_new(
        cls,
        name: str,
        system_prompt: str = "",
        llm_model: str = "",
        embed_model: str = "",
        **kwargs
    ) -> "Chat":
        """Create a new chat with a timestamp ID (``YYYYMMDD-HHMMSS``)."""
        now = kwargs.pop("created_at", None) or utc_now()
        return cls(
            id=now.strftime("%Y%m%d-%H%M%S"),
            name=name,
            system_prompt=system_prompt,
            llm_model=llm_model,
            embed_model=embed_model,
            created_at=now,
            **kwargs
        )


@dataclass
class Message:
    """
    A conversation message with an optional embedding.

    The embedding is empty while an asynchronous embedding is pending; it
    is filled in once by a back-fill write.

    Attributes:
        id: Message identifier
        chat_id: Owning chat
        role: user, assistant or context
        content: Message text
        embedding: Embedding vector (empty if not embedded yet)
        timestamp: When the message was created
    """
    id: str
    chat_id: str
    role: MessageRole
    content: str
    embedding: List[float] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.role = MessageRole(self.role)

    @property
    def has_embedding(self) -> bool:
        return len(self.embedding) > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "role": self.role.value,
            "content": self.content,
            "embedding": list(self.embedding),
            "timestamp": _format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            chat_id=data.get("chat_id", ""),
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            embedding=_embedding_from(data.get("embedding")),
            timestamp=parse_timestamp(data["timestamp"]),
        )

    @classmethod
    def create_new(
        cls,
        chat_id: str,
        role: MessageRole,
        content: str,
        embedding: Optional[List[float]] = None,
    ) -> "Message":
        """Create a new message with a ``msg-<nanoseconds>`` ID."""
        return cls(
            id=f"msg-{time.time_ns()}",
            chat_id=chat_id,
            role=MessageRole(role),
            content=content,
            embedding=list(embedding or []),
        )


@dataclass
class Document:
    """
    A loaded file. ``content_hash`` is used to detect re-loads of
    identical content before re-chunking and re-embedding.
    """
    id: str
    chat_id: str
    file_path: str
    file_name: str
    file_size: int
    content_hash: str
    mime_type: str = ""
    encoding: str = ""
    chunk_count: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    uploaded_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "file_path": self.file_path,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "content_hash": self.content_hash,
            "mime_type": self.mime_type,
            "encoding": self.encoding,
            "chunk_count": self.chunk_count,
            "metadata": dict(self.metadata),
            "uploaded_at": _format_timestamp(self.uploaded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        """Create from dictionary."""
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        return cls(
            id=data["id"],
            chat_id=data.get("chat_id", ""),
            file_path=data.get("file_path", ""),
            file_name=data.get("file_name", ""),
            file_size=int(data.get("file_size", 0)),
            content_hash=data["content_hash"],
            mime_type=data.get("mime_type", ""),
            encoding=data.get("encoding", ""),
            chunk_count=int(data.get("chunk_count", 0)),
            metadata={str(k): str(v) for k, v in metadata.items()},
            uploaded_at=parse_timestamp(data["uploaded_at"]),
        )


@dataclass
class DocumentChunk:
    """A span of a document with its embedding."""
    id: str
    document_id: str
    chat_id: str
    chunk_index: int
    content: str
    embedding: List[float] = field(default_factory=list)
    start_pos: int = 0
    end_pos: int = 0
    file_path: str = ""

    @property
    def has_embedding(self) -> bool:
        return len(self.embedding) > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "document_id": self.document_id,
            "chat_id": self.chat_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "embedding": list(self.embedding),
            "start_pos": self.start_pos,
            "end_pos": self.end_pos,
            "file_path": self.file_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentChunk":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            document_id=data.get("document_id", ""),
            chat_id=data.get("chat_id", ""),
            chunk_index=int(data.get("chunk_index", 0)),
            content=data.get("content", ""),
            embedding=_embedding_from(data.get("embedding")),
            start_pos=int(data.get("start_pos", 0)),
            end_pos=int(data.get("end_pos", 0)),
            file_path=data.get("file_path", ""),
        )


@dataclass
class ProfileFact:
    """
    A fact about the user.

    Attributes:
        key: Fact key, unique per chat
        value: Fact value
        confidence: Confidence in [0, 1]
        source: explicit or inferred
        first_seen: When the key was first recorded
        last_seen: When the fact was last written or confirmed
        context: Snippet the fact was extracted from
    """
    key: str
    value: str
    confidence: float = 1.0
    source: FactSource = FactSource.EXPLICIT
    first_seen: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    context: str = ""

    def __post_init__(self):
        self.source = FactSource(self.source)
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "key": self.key,
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source.value,
            "first_seen": _format_timestamp(self.first_seen),
            "last_seen": _format_timestamp(self.last_seen),
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileFact":
        """Create from dictionary."""
        return cls(
            key=data["key"],
            value=data["value"],
            confidence=float(data.get("confidence", 1.0)),
            source=FactSource(data.get("source", FactSource.EXPLICIT.value)),
            first_seen=parse_timestamp(data["first_seen"]),
            last_seen=parse_timestamp(data["last_seen"]),
            context=data.get("context", ""),
        )


@dataclass
class UserProfile:
    """All current facts for one chat, keyed by fact key."""
    chat_id: str
    facts: Dict[str, ProfileFact] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chat_id": self.chat_id,
            "facts": {key: fact.to_dict() for key, fact in self.facts.items()},
            "updated_at": _format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        """Create from dictionary."""
        facts = data.get("facts") or {}
        if not isinstance(facts, dict):
            raise ValueError("facts must be an object")
        return cls(
            chat_id=data["chat_id"],
            facts={key: ProfileFact.from_dict(value) for key, value in facts.items()},
            updated_at=parse_timestamp(data["updated_at"]),
        )
