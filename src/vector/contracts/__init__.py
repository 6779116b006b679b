"""
Chat Store Contracts

Data models for chats, messages, documents, chunks and profile facts.
"""

from .models import (
    Chat,
    Message,
    Document,
    DocumentChunk,
    ProfileFact,
    UserProfile,
    MessageRole,
    FactSource,
)

__all__ = [
    "Chat",
    "Message",
    "Document",
    "DocumentChunk",
    "ProfileFact",
    "UserProfile",
    "MessageRole",
    "FactSource",
]
