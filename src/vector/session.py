"""
Scoped handle on the open chat.

``ChatStore.open_chat`` returns a ChatSession. The session owns the chat's
key-value environment and its in-memory ANN indexes. Its state only moves
``OPEN -> CLOSED``: it closes when the caller closes it (directly or by
leaving a ``with`` block), when another chat is opened, when the chat is
deleted, or when the store shuts down.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .core.cancellation import CancellationToken
from .hnsw import HNSWConfig, HNSWIndex
from .kv import KVEnvironment
from .profile import ProfileStore

if TYPE_CHECKING:
    from .store import ChatStore


logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of a chat session."""
    OPEN = "open"
    CLOSED = "closed"


class ChatSession:
    """
    The open chat.

    Example:
        >>> with store.open_chat("20250101-120000") as session:
        ...     store.store_message(message)
        >>> session.state
        <SessionState.CLOSED: 'closed'>
    """

    def __init__(
        self,
        store: "ChatStore",
        chat_id: str,
        env: KVEnvironment,
        hnsw_config: Optional[HNSWConfig] = None,
    ):
        self._store = store
        self.chat_id = chat_id
        self.env = env
        self.profiles = ProfileStore(env)
        self.message_index = HNSWIndex(hnsw_config)
        self.chunk_index = HNSWIndex(hnsw_config)
        self.state = SessionState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def close(self, cancel: Optional[CancellationToken] = None) -> None:
        """Close this session. No-op if it is already closed."""
        if self.is_open:
            self._store._close_session(self, cancel=cancel)

    def __enter__(self) -> "ChatSession":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ChatSession(chat_id={self.chat_id!r}, state={self.state.value})"

    def _shutdown(self) -> None:
        """Release the environment and drop the indexes. Called by the store under its lock."""
        if not self.is_open:
            return
        self.state = SessionState.CLOSED
        self.message_index.clear()
        self.chunk_index.clear()
        try:
            self.env.close()
        finally:
            logger.info(f"Closed chat {self.chat_id}")
