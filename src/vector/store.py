"""
Chat Store - per-chat persistence and similarity retrieval.

Layout under the base directory:

    <base_dir>/<chat_id>/metadata.json    Chat record (JSON)
    <base_dir>/<chat_id>/messages.db/     key-value environment
        msg:<id>     -> Message
        doc:<id>     -> Document
        chunk:<id>   -> DocumentChunk
        profile*:... -> profile facts (see profile.py)

At most one chat is open at a time. Chat metadata lives outside the
key-value environment so listing chats never opens a database.

Searches use an exact linear scan by default. While a chat is open the
store also keeps in-memory ANN indexes (rebuilt on open, updated on write);
once a pool reaches ``ann_threshold`` vectors, searches over it go through
the index and the returned candidates are re-scored exactly.
"""

import dataclasses
import logging
import os
import shutil
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Type, TypeVar, Union

from .contracts.models import Chat, Document, DocumentChunk, Message, MessageRole, ProfileFact, UserProfile
from .core.cancellation import CancellationToken, check_cancelled
from .core.config import StoreConfig
from .core.exceptions import (
    ChatNotFoundError,
    NoOpenChatError,
    SerializationError,
    StorageIOError,
    VectorStoreError,
)
from .core.locks import ReadWriteLock
from .core.logging import ChatLogContext
from .hnsw import HNSWIndex
from .kv import KVEnvironment
from .retrieval import HybridResult, RetrievalHit, rank_by_similarity, select_hybrid
from .serialization import decode_record, encode_record
from .session import ChatSession


logger = logging.getLogger(__name__)

T = TypeVar("T")

METADATA_FILE = "metadata.json"
DB_DIR = "messages.db"

MESSAGE_PREFIX = "msg:"
DOCUMENT_PREFIX = "doc:"
CHUNK_PREFIX = "chunk:"


class ChatStore:
    """
    Storage interface for chats, messages, documents, chunks and profiles.

    All methods are guarded by one reader/writer lock: lifecycle changes and
    writes take it exclusively, reads and searches share it. Every blocking
    method accepts an optional ``cancel`` token.

    Example:
        >>> store = ChatStore("/tmp/chats")
        >>> chat = Chat.create_new("notes")
        >>> store.store_chat(chat)
        >>> with store.open_chat(chat.id):
        ...     store.store_message(Message.create_new(chat.id, "user", "hi", [0.1, 0.2]))
        ...     hits = store.search_similar([0.1, 0.2], top_k=3)
        >>> store.close()
    """

    def __init__(
        self,
        base_dir: Optional[Union[str, Path]] = None,
        config: Optional[StoreConfig] = None,
    ):
        """
        Initialize the store.

        Args:
            base_dir: Root directory for chat data (overrides config.base_dir)
            config: Store configuration (defaults to StoreConfig())
        """
        config = config or StoreConfig()
        if base_dir is not None:
            config = dataclasses.replace(config, base_dir=Path(base_dir))
        self.config = config
        self.base_dir = config.base_dir

        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"failed to create base directory {self.base_dir}: {e}", operation="init"
            ) from e

        self._lock = ReadWriteLock()
        self._session: Optional[ChatSession] = None

    def __enter__(self) -> "ChatStore":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def active_chat_id(self) -> Optional[str]:
        """ID of the open chat, or None."""
        session = self._session
        return session.chat_id if session is not None and session.is_open else None

    @property
    def session(self) -> Optional[ChatSession]:
        return self._session

    # =========================================================================
    # Chat lifecycle
    # =========================================================================

    def open_chat(self, chat_id: str, cancel: Optional[CancellationToken] = None) -> ChatSession:
        """
        Open a chat's database, closing any chat that is already open.

        Creates ``<base_dir>/<chat_id>/`` if needed and rebuilds the ANN
        indexes from the persisted vectors.

        Returns:
            The session owning the open handle

        Raises:
            StorageIOError: Directory creation or database open failed
        """
        chat_dir = self._chat_dir(chat_id)

        with ChatLogContext(chat_id=chat_id, operation="open_chat"):
            with self._lock.write_locked(cancel):
                self._shutdown_active()

                try:
                    chat_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise StorageIOError(
                        f"failed to create chat directory {chat_dir}: {e}", operation="open_chat"
                    ) from e

                env = KVEnvironment.open(
                    chat_dir / DB_DIR,
                    busy_timeout_seconds=self.config.busy_timeout_seconds,
                    cancel=cancel,
                )
                session = ChatSession(self, chat_id, env, hnsw_config=self.config.hnsw)

                if self.config.ann_enabled:
                    try:
                        self._build_indexes(session, cancel)
                    except BaseException:
                        session._shutdown()
                        raise

                self._session = session

            logger.info(f"Opened chat {chat_id}")
        return session

    def close_chat(self, cancel: Optional[CancellationToken] = None) -> None:
        """Close the open chat. No-op if none is open."""
        with self._lock.write_locked(cancel):
            self._shutdown_active()

    def close(self) -> None:
        """Release any open handle. Call on process shutdown."""
        with self._lock.write_locked():
            self._shutdown_active()

    def _close_session(self, session: ChatSession, cancel: Optional[CancellationToken] = None) -> None:
        with self._lock.write_locked(cancel):
            if self._session is session:
                self._shutdown_active()
            else:
                session._shutdown()

    def _shutdown_active(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session._shutdown()

    def _require_session(self) -> ChatSession:
        session = self._session
        if session is None or not session.is_open:
            raise NoOpenChatError()
        return session

    # =========================================================================
    # Message operations
    # =========================================================================

    def store_message(self, message: Message, cancel: Optional[CancellationToken] = None) -> None:
        """
        Store a message in the open chat.

        The stored copy carries the open chat's ``chat_id``; the caller's
        object is not modified.

        Raises:
            NoOpenChatError: No chat is open
        """
        with self._lock.write_locked(cancel):
            session = self._require_session()
            message = dataclasses.replace(message, chat_id=session.chat_id)
            key = f"{MESSAGE_PREFIX}{message.id}"
            session.env.put(key, encode_record(message, key), cancel=cancel)
            self._index_message(session, message)

        logger.debug(f"Stored message {message.id} ({message.role.value}) in chat {message.chat_id}")

    def store_message_to_chat(
        self,
        chat_id: str,
        message: Message,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """
        Write a message to any chat without touching the open chat's handle.

        Opens a short-lived handle on the target chat, writes, and closes it.
        If the target is the open chat, the two handles are serialized by the
        database's file lock (waiting up to the busy timeout) and the open
        chat's ANN index is updated.

        Raises:
            ChatNotFoundError: The chat directory does not exist
            StorageIOError: The target database stayed locked or the write failed
        """
        chat_dir = self._chat_dir(chat_id)

        with ChatLogContext(chat_id=chat_id, operation="store_message_to_chat"):
            # Shared: excludes delete_chat/open_chat, not other readers
            with self._lock.read_locked(cancel):
                if not chat_dir.is_dir():
                    raise ChatNotFoundError(chat_id)

                message = dataclasses.replace(message, chat_id=chat_id)
                key = f"{MESSAGE_PREFIX}{message.id}"
                payload = encode_record(message, key)

                env = KVEnvironment.open(
                    chat_dir / DB_DIR,
                    busy_timeout_seconds=self.config.busy_timeout_seconds,
                    cancel=cancel,
                )
                try:
                    env.put(key, payload, cancel=cancel)
                finally:
                    env.close()

                session = self._session
                if session is not None and session.is_open and session.chat_id == chat_id:
                    self._index_message(session, message)

            logger.debug(f"Stored message {message.id} to chat {chat_id} via short-lived handle")

    def get_messages(self, cancel: Optional[CancellationToken] = None) -> List[Message]:
        """All messages in the open chat, oldest first. Malformed records are skipped."""
        messages = self.get_all_messages(cancel=cancel)
        messages.sort(key=lambda m: m.timestamp)
        return messages

    def get_all_messages(self, cancel: Optional[CancellationToken] = None) -> List[Message]:
        """All messages in storage order (unsorted)."""
        with self._lock.read_locked(cancel):
            session = self._require_session()
            return self._scan_records(session.env, MESSAGE_PREFIX, Message, cancel)

    # =========================================================================
    # Document operations
    # =========================================================================

    def store_document(self, document: Document, cancel: Optional[CancellationToken] = None) -> None:
        """Store document metadata in the open chat."""
        with self._lock.write_locked(cancel):
            session = self._require_session()
            key = f"{DOCUMENT_PREFIX}{document.id}"
            session.env.put(key, encode_record(document, key), cancel=cancel)

        logger.debug(f"Stored document {document.id} ({document.file_name}) in chat {session.chat_id}")

    def get_documents(self, cancel: Optional[CancellationToken] = None) -> List[Document]:
        """All documents in the open chat, by upload time. Malformed records are skipped."""
        with self._lock.read_locked(cancel):
            session = self._require_session()
            documents = self._scan_records(session.env, DOCUMENT_PREFIX, Document, cancel)
        documents.sort(key=lambda d: d.uploaded_at)
        return documents

    def get_document_count(self, cancel: Optional[CancellationToken] = None) -> int:
        """Number of documents in the open chat (keys only, values are not decoded)."""
        with self._lock.read_locked(cancel):
            session = self._require_session()
            with session.env.begin(cancel=cancel, operation="count documents") as txn:
                return txn.count(DOCUMENT_PREFIX)

    def find_document_by_hash(
        self,
        content_hash: str,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[Document]:
        """
        First document (in storage order) with the given content hash.

        Returns:
            The document, or None if no document has this hash
        """
        with self._lock.read_locked(cancel):
            session = self._require_session()
            with session.env.begin(cancel=cancel, operation="find document by hash") as txn:
                rows = txn.iter_prefix(DOCUMENT_PREFIX)
                try:
                    for document in self._decode_rows(rows, Document):
                        if document.content_hash == content_hash:
                            return document
                finally:
                    rows.close()
        return None

    def store_document_chunk(self, chunk: DocumentChunk, cancel: Optional[CancellationToken] = None) -> None:
        """Store a chunk (with its embedding) in the open chat."""
        with self._lock.write_locked(cancel):
            session = self._require_session()
            key = f"{CHUNK_PREFIX}{chunk.id}"
            session.env.put(key, encode_record(chunk, key), cancel=cancel)
            if self.config.ann_enabled and chunk.has_embedding:
                session.chunk_index.add(chunk.id, chunk.embedding, is_message=False, is_context=False)

        logger.debug(f"Stored chunk {chunk.id} of document {chunk.document_id}")

    def get_chunks(self, cancel: Optional[CancellationToken] = None) -> List[DocumentChunk]:
        """All chunks in the open chat, in storage order."""
        with self._lock.read_locked(cancel):
            session = self._require_session()
            return self._scan_records(session.env, CHUNK_PREFIX, DocumentChunk, cancel)

    # =========================================================================
    # Chat metadata
    # =========================================================================

    def store_chat(self, chat: Chat, cancel: Optional[CancellationToken] = None) -> None:
        """Create the chat directory (if needed) and write its metadata."""
        with self._lock.write_locked(cancel):
            self._write_metadata(chat, create_dir=True)
        logger.info(f"Stored chat {chat.id} ({chat.name})")

    def update_chat(self, chat: Chat, cancel: Optional[CancellationToken] = None) -> None:
        """
        Rewrite metadata of an existing chat.

        Raises:
            ChatNotFoundError: The chat directory does not exist
        """
        with self._lock.write_locked(cancel):
            self._write_metadata(chat, create_dir=False)
        logger.debug(f"Updated chat {chat.id}")

    def get_chat(self, chat_id: str, cancel: Optional[CancellationToken] = None) -> Chat:
        """
        Read a chat's metadata.

        Raises:
            ChatNotFoundError: No metadata file for this chat
            StorageIOError: The file exists but cannot be read
            SerializationError: The file is not a valid chat record
        """
        path = self._chat_dir(chat_id) / METADATA_FILE
        with self._lock.read_locked(cancel):
            try:
                raw = path.read_bytes()
            except FileNotFoundError as e:
                raise ChatNotFoundError(chat_id) from e
            except OSError as e:
                raise StorageIOError(
                    f"failed to read chat metadata {path}: {e}", operation="get_chat"
                ) from e
        return decode_record(Chat, raw, str(path))

    def list_chats(self, cancel: Optional[CancellationToken] = None) -> List[Chat]:
        """
        All chats with readable metadata, newest first.

        Directories without metadata, or with unreadable or malformed
        metadata, are skipped.
        """
        chats = []
        with self._lock.read_locked(cancel):
            try:
                entries = sorted(self.base_dir.iterdir())
            except FileNotFoundError:
                return []
            except OSError as e:
                raise StorageIOError(
                    f"failed to read base directory {self.base_dir}: {e}", operation="list_chats"
                ) from e

            for entry in entries:
                check_cancelled(cancel, "list chats")
                if not entry.is_dir():
                    continue
                path = entry / METADATA_FILE
                try:
                    raw = path.read_bytes()
                except OSError as e:
                    logger.debug(f"Skipping {entry.name}: {e}")
                    continue
                try:
                    chats.append(decode_record(Chat, raw, str(path)))
                except SerializationError as e:
                    logger.warning(f"Skipping chat with invalid metadata: {e}")

        chats.sort(key=lambda c: c.created_at, reverse=True)
        return chats

    def delete_chat(self, chat_id: str, cancel: Optional[CancellationToken] = None) -> None:
        """
        Delete a chat's directory tree (metadata and database).

        If the chat is open it is closed first; a failure to close is logged
        and deletion proceeds.

        Raises:
            StorageIOError: The directory could not be removed
        """
        chat_dir = self._chat_dir(chat_id)

        with self._lock.write_locked(cancel):
            if self.active_chat_id == chat_id:
                try:
                    self._shutdown_active()
                except VectorStoreError as e:
                    logger.warning(f"Failed to close chat {chat_id} before deletion: {e}")

            if not chat_dir.exists():
                logger.debug(f"Chat directory already absent: {chat_dir}")
                return

            try:
                shutil.rmtree(chat_dir)
            except OSError as e:
                raise StorageIOError(
                    f"failed to delete chat directory {chat_dir}: {e}", operation="delete_chat"
                ) from e

        logger.info(f"Deleted chat {chat_id}")

    # =========================================================================
    # Retrieval
    # =========================================================================

    def search_similar(
        self,
        query: Sequence[float],
        top_k: int,
        cancel: Optional[CancellationToken] = None,
    ) -> List[RetrievalHit]:
        """
        Messages most similar to ``query``.

        Returns:
            Up to ``top_k`` hits over messages with embeddings, by descending
            score (ties keep storage order)
        """
        with self._lock.read_locked(cancel):
            session = self._require_session()
            hits = self._rank_messages(session, query, top_k, cancel)

        logger.debug(f"search_similar returned {len(hits)} messages (top_k={top_k})")
        return hits

    def search_context(
        self,
        query: Sequence[float],
        top_k: int,
        cancel: Optional[CancellationToken] = None,
    ) -> List[RetrievalHit]:
        """Like ``search_similar`` but restricted to ``context`` role messages."""
        with self._lock.read_locked(cancel):
            session = self._require_session()
            return self._rank_messages(session, query, top_k, cancel, context_only=True)

    def search_similar_with_chunks(
        self,
        query: Sequence[float],
        top_k: int,
        cancel: Optional[CancellationToken] = None,
    ) -> HybridResult:
        """
        Hybrid search over messages and document chunks.

        Each pool is ranked on its own; the ``top_k`` budget is split
        between them (see ``retrieval.allocate_hybrid``) so that an empty or
        small pool hands its share to the other.
        """
        return self._search_hybrid(query, top_k, cancel, context_only=False)

    def search_context_and_chunks(
        self,
        query: Sequence[float],
        top_k: int,
        cancel: Optional[CancellationToken] = None,
    ) -> HybridResult:
        """
        Hybrid search over ``context`` role messages and document chunks.

        Same budget split as ``search_similar_with_chunks``; user, assistant
        and system messages are not candidates.
        """
        return self._search_hybrid(query, top_k, cancel, context_only=True)

    def _search_hybrid(
        self,
        query: Sequence[float],
        top_k: int,
        cancel: Optional[CancellationToken],
        context_only: bool,
    ) -> HybridResult:
        with self._lock.read_locked(cancel):
            session = self._require_session()
            # Neither share can exceed top_k, so each pool is truncated to it
            ranked_messages = self._rank_messages(session, query, top_k, cancel, context_only)

            if self._use_ann(session.chunk_index):
                ids = session.chunk_index.search(query, top_k)
                chunks = self._fetch(session.env, CHUNK_PREFIX, ids, DocumentChunk, cancel)
            else:
                chunks = self._scan_records(session.env, CHUNK_PREFIX, DocumentChunk, cancel)
            ranked_chunks = rank_by_similarity(query, chunks, top_k)

        result = select_hybrid(ranked_messages, ranked_chunks, top_k)
        logger.debug(
            f"Hybrid search (context_only={context_only}) returned {len(result.messages)} "
            f"messages and {len(result.chunks)} chunks (top_k={top_k})"
        )
        return result

    def _rank_messages(
        self,
        session: ChatSession,
        query: Sequence[float],
        top_k: int,
        cancel: Optional[CancellationToken],
        context_only: bool = False,
    ) -> List[RetrievalHit]:
        if self._use_ann(session.message_index):
            ids = session.message_index.search(query, top_k, filter_context=context_only)
            candidates = self._fetch(session.env, MESSAGE_PREFIX, ids, Message, cancel)
        else:
            candidates = self._scan_records(session.env, MESSAGE_PREFIX, Message, cancel)
        if context_only:
            candidates = [m for m in candidates if m.role is MessageRole.CONTEXT]
        return rank_by_similarity(query, candidates, top_k)

    def _use_ann(self, index: HNSWIndex) -> bool:
        return self.config.ann_enabled and index.size() >= max(self.config.ann_threshold, 1)

    # =========================================================================
    # Profile operations
    # =========================================================================

    def store_user_profile(self, profile: UserProfile, cancel: Optional[CancellationToken] = None) -> None:
        """Replace the whole profile of ``profile.chat_id`` in the open chat."""
        with self._lock.write_locked(cancel):
            self._require_session().profiles.store_user_profile(profile, cancel=cancel)

    def get_user_profile(self, chat_id: str, cancel: Optional[CancellationToken] = None) -> UserProfile:
        """The chat's profile; empty if nothing was stored yet."""
        with self._lock.read_locked(cancel):
            return self._require_session().profiles.get_user_profile(chat_id, cancel=cancel)

    def upsert_profile_fact(
        self,
        chat_id: str,
        fact: ProfileFact,
        cancel: Optional[CancellationToken] = None,
    ) -> ProfileFact:
        """Insert or overwrite a fact by key (last write wins)."""
        with self._lock.write_locked(cancel):
            return self._require_session().profiles.upsert_profile_fact(chat_id, fact, cancel=cancel)

    def get_profile_fact(
        self,
        chat_id: str,
        key: str,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[ProfileFact]:
        """Current value of a fact, or None."""
        with self._lock.read_locked(cancel):
            return self._require_session().profiles.get_profile_fact(chat_id, key, cancel=cancel)

    def delete_profile_fact(
        self,
        chat_id: str,
        key: str,
        cancel: Optional[CancellationToken] = None,
    ) -> bool:
        """Remove a fact; returns True if it existed."""
        with self._lock.write_locked(cancel):
            return self._require_session().profiles.delete_profile_fact(chat_id, key, cancel=cancel)

    def get_fact_history(
        self,
        chat_id: str,
        key: str,
        cancel: Optional[CancellationToken] = None,
    ) -> List[ProfileFact]:
        """Replaced and deleted versions of a fact, most recent first."""
        with self._lock.read_locked(cancel):
            return self._require_session().profiles.get_fact_history(chat_id, key, cancel=cancel)

    # =========================================================================
    # Internals
    # =========================================================================

    def _chat_dir(self, chat_id: str) -> Path:
        if not chat_id or chat_id in (".", "..") or "/" in chat_id or "\\" in chat_id:
            raise ValueError(f"Invalid chat id: {chat_id!r}")
        return self.base_dir / chat_id

    def _write_metadata(self, chat: Chat, create_dir: bool) -> None:
        chat_dir = self._chat_dir(chat.id)
        if create_dir:
            try:
                chat_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageIOError(
                    f"failed to create chat directory {chat_dir}: {e}", operation="store_chat"
                ) from e
        elif not chat_dir.is_dir():
            raise ChatNotFoundError(chat.id)

        path = chat_dir / METADATA_FILE
        payload = encode_record(chat, str(path))
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageIOError(
                f"failed to write chat metadata {path}: {e}", operation="store_chat"
            ) from e

    def _index_message(self, session: ChatSession, message: Message) -> None:
        if self.config.ann_enabled and message.has_embedding:
            session.message_index.add(
                message.id,
                message.embedding,
                is_message=True,
                is_context=message.role is MessageRole.CONTEXT,
            )

    def _build_indexes(self, session: ChatSession, cancel: Optional[CancellationToken]) -> None:
        """Rebuild the open chat's ANN indexes from persisted vectors."""
        for message in self._scan_records(session.env, MESSAGE_PREFIX, Message, cancel):
            self._index_message(session, message)
        check_cancelled(cancel, "build index")
        for chunk in self._scan_records(session.env, CHUNK_PREFIX, DocumentChunk, cancel):
            if chunk.has_embedding:
                session.chunk_index.add(chunk.id, chunk.embedding, is_message=False, is_context=False)

        logger.info(
            f"Built ANN indexes for chat {session.chat_id}: "
            f"{session.message_index.size()} messages, {session.chunk_index.size()} chunks"
        )

    def _decode_rows(self, rows: Iterator[Tuple[str, bytes]], cls: Type[T]) -> Iterator[T]:
        for key, raw in rows:
            try:
                yield decode_record(cls, raw, key)
            except SerializationError as e:
                logger.warning(f"Skipping malformed record: {e}")

    def _scan_records(
        self,
        env: KVEnvironment,
        prefix: str,
        cls: Type[T],
        cancel: Optional[CancellationToken],
    ) -> List[T]:
        return list(self._decode_rows(iter(env.scan(prefix, cancel=cancel)), cls))

    def _fetch(
        self,
        env: KVEnvironment,
        prefix: str,
        ids: List[str],
        cls: Type[T],
        cancel: Optional[CancellationToken],
    ) -> List[T]:
        """Load records by ID, keeping the order of ``ids`` and skipping missing ones."""
        rows = []
        with env.begin(cancel=cancel, operation=f"fetch {prefix}") as txn:
            for record_id in ids:
                key = f"{prefix}{record_id}"
                raw = txn.get(key)
                if raw is not None:
                    rows.append((key, raw))
        return list(self._decode_rows(iter(rows), cls))
