"""
Shared test fixtures and configuration for pytest.
"""

import logging
import sys
from pathlib import Path
from typing import Generator, List

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vector.contracts.models import Chat, Message, MessageRole  # noqa: E402
from vector.core.config import StoreConfig  # noqa: E402
from vector.store import ChatStore  # noqa: E402


logger = logging.getLogger(__name__)


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def restore_package_logger() -> Generator[None, None, None]:
    """Undo configure_logging() changes made by a test."""
    pkg_logger = logging.getLogger("vector")
    handlers = list(pkg_logger.handlers)
    level = pkg_logger.level
    propagate = pkg_logger.propagate

    yield

    for handler in pkg_logger.handlers:
        if handler not in handlers:
            pkg_logger.removeHandler(handler)
            handler.close()
    pkg_logger.setLevel(level)
    pkg_logger.propagate = propagate


@pytest.fixture
def store_config(tmp_path: Path) -> StoreConfig:
    """Config rooted in a temporary directory with the ANN path off."""
    return StoreConfig(
        base_dir=tmp_path / "db",
        config_dir=tmp_path / "config",
        busy_timeout_seconds=2.0,
        ann_enabled=False,
        backfill_delay_seconds=0.0,
    )


@pytest.fixture
def store(store_config: StoreConfig) -> Generator[ChatStore, None, None]:
    """Fresh store; closed after the test."""
    chat_store = ChatStore(config=store_config)
    yield chat_store
    chat_store.close()


@pytest.fixture
def chat(store: ChatStore) -> Chat:
    """A stored chat (not opened)."""
    chat = Chat.create_new("test chat", system_prompt="be brief", llm_model="llama3", embed_model="nomic")
    store.store_chat(chat)
    return chat


@pytest.fixture
def open_chat(store: ChatStore, chat: Chat) -> Chat:
    """A stored chat that is currently open."""
    store.open_chat(chat.id)
    return chat


@pytest.fixture
def make_message():
    """Factory for messages with fixed IDs so ordering assertions are deterministic."""
    def _make(chat_id: str, msg_id: str, embedding: List[float], role=MessageRole.USER, content: str = "") -> Message:
        return Message(
            id=msg_id,
            chat_id=chat_id,
            role=role,
            content=content or f"content of {msg_id}",
            embedding=embedding,
        )
    return _make
