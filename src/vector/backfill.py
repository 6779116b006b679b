"""
Deferred embedding back-fill.

A message can be persisted before its embedding is available (the caller
stores it with an empty embedding and replies to the user right away).
``schedule_embedding_backfill`` then embeds the content on a background
thread and rewrites the message through ``ChatStore.store_message_to_chat``,
which works whether or not the chat is still the open one.
"""

import logging
import threading
from typing import Callable, List, Optional

from .contracts.models import Message
from .core.cancellation import CancellationToken
from .core.exceptions import VectorStoreError
from .core.logging import ChatLogContext
from .store import ChatStore


logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], List[float]]


class BackfillWorker:
    """
    Background thread that embeds one message and writes it back.

    Failures are logged and recorded on ``error``; they are never raised
    into the caller's thread.

    Attributes:
        message_id: The message being embedded
        succeeded: True once the write landed, False on failure, None while
            pending or if cancelled before running
        error: The exception that stopped the back-fill, if any
    """

    def __init__(
        self,
        store: ChatStore,
        chat_id: str,
        message: Message,
        embed_fn: EmbedFn,
        delay_seconds: float,
    ):
        self.store = store
        self.chat_id = chat_id
        self.message = message
        self.message_id = message.id
        self.embed_fn = embed_fn
        self.delay_seconds = max(delay_seconds, 0.0)

        self.succeeded: Optional[bool] = None
        self.error: Optional[BaseException] = None

        self._token = CancellationToken()
        self._thread = threading.Thread(
            target=self._run,
            name=f"backfill-{message.id}",
            daemon=True,
        )

    def start(self) -> "BackfillWorker":
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Stop the back-fill if it has not written yet."""
        self._token.cancel("backfill cancelled")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker; returns True if it finished."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def done(self) -> bool:
        return self._thread.ident is not None and not self._thread.is_alive()

    def _run(self) -> None:
        with ChatLogContext(chat_id=self.chat_id, operation="backfill", worker=self._thread.name):
            # wait() returns True when cancelled before the delay elapsed
            if self._token.wait(self.delay_seconds):
                logger.debug(f"Back-fill of {self.message_id} cancelled before start")
                return

            try:
                embedding = self.embed_fn(self.message.content)
            except Exception as e:
                self._fail(e, "embedding failed")
                return

            if not embedding:
                self._fail(ValueError("embedder returned an empty vector"), "embedding failed")
                return

            message = Message(
                id=self.message.id,
                chat_id=self.chat_id,
                role=self.message.role,
                content=self.message.content,
                embedding=list(embedding),
                timestamp=self.message.timestamp,
            )

            try:
                self.store.store_message_to_chat(self.chat_id, message, cancel=self._token)
            except VectorStoreError as e:
                if self._token.cancelled:
                    logger.debug(f"Back-fill of {self.message_id} cancelled during write")
                    return
                self._fail(e, "write failed")
                return

            self.succeeded = True
            logger.debug(f"Back-filled embedding for {self.message_id} ({len(embedding)} dims)")

    def _fail(self, error: BaseException, stage: str) -> None:
        self.succeeded = False
        self.error = error
        logger.error(f"Back-fill of {self.message_id} in chat {self.chat_id} {stage}: {error}")


def schedule_embedding_backfill(
    store: ChatStore,
    chat_id: str,
    message: Message,
    embed_fn: EmbedFn,
    delay: Optional[float] = None,
) -> BackfillWorker:
    """
    Embed ``message`` after ``delay`` seconds and store it in ``chat_id``.

    Args:
        store: Store to write through
        chat_id: Target chat (need not be the open one)
        message: Message already persisted without an embedding
        embed_fn: Callable mapping text to an embedding vector
        delay: Seconds to wait first (defaults to the store's
            ``backfill_delay_seconds``)

    Returns:
        The started worker
    """
    if delay is None:
        delay = store.config.backfill_delay_seconds
    worker = BackfillWorker(store, chat_id, message, embed_fn, delay)
    logger.debug(f"Scheduled back-fill of {message.id} in chat {chat_id} after {delay:.2f}s")
    return worker.start()
