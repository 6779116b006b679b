"""
Profile fact persistence inside a chat's key-value environment.

Key scheme (distinct from the msg:/doc:/chunk: prefixes):
- ``profile:<chat_id>``                      aggregate UserProfile
- ``profile_fact:<chat_id>:<key>``           current value of one fact
- ``profile_history:<chat_id>:<key>:<ns>``   a replaced or deleted version

Upserts are last-write-wins per key. The version being replaced is copied
to a history key in the same transaction.
"""

import logging
import time
from typing import List, Optional

from .contracts.models import ProfileFact, UserProfile, utc_now
from .core.cancellation import CancellationToken
from .core.exceptions import SerializationError
from .kv import KVEnvironment, KVTransaction
from .serialization import decode_record, encode_record


logger = logging.getLogger(__name__)


def profile_key(chat_id: str) -> str:
    return f"profile:{chat_id}"


def fact_key(chat_id: str, key: str) -> str:
    return f"profile_fact:{chat_id}:{key}"


def history_prefix(chat_id: str, key: str) -> str:
    return f"profile_history:{chat_id}:{key}:"


class ProfileStore:
    """
    Profile operations over an open environment.

    Callers (ChatStore) are responsible for locking and for making sure the
    environment is open.
    """

    def __init__(self, env: KVEnvironment):
        self.env = env

    def store_user_profile(self, profile: UserProfile, cancel: Optional[CancellationToken] = None) -> None:
        """Replace the whole profile, rewriting the per-fact keys to match."""
        profile.updated_at = utc_now()
        with self.env.begin(write=True, cancel=cancel, operation="store user profile") as txn:
            txn.put(profile_key(profile.chat_id), encode_record(profile, profile_key(profile.chat_id)))
            txn.delete_prefix(f"profile_fact:{profile.chat_id}:")
            for key, fact in profile.facts.items():
                txn.put(fact_key(profile.chat_id, key), encode_record(fact, fact_key(profile.chat_id, key)))
        logger.debug(f"Stored profile for chat {profile.chat_id} ({len(profile.facts)} facts)")

    def get_user_profile(self, chat_id: str, cancel: Optional[CancellationToken] = None) -> UserProfile:
        """Return the stored profile, or an empty one if none exists yet."""
        with self.env.begin(cancel=cancel, operation="get user profile") as txn:
            profile = self._load_profile(txn, chat_id)
        return profile or UserProfile(chat_id=chat_id)

    def upsert_profile_fact(
        self,
        chat_id: str,
        fact: ProfileFact,
        cancel: Optional[CancellationToken] = None,
    ) -> ProfileFact:
        """
        Insert or overwrite a fact by key.

        An existing fact keeps its ``first_seen`` and is archived to history;
        ``last_seen`` is stamped with the current time.

        Returns:
            The fact as stored
        """
        now = utc_now()
        with self.env.begin(write=True, cancel=cancel, operation="upsert profile fact") as txn:
            profile = self._load_profile(txn, chat_id) or UserProfile(chat_id=chat_id, updated_at=now)

            previous = profile.facts.get(fact.key)
            if previous is not None:
                self._archive(txn, chat_id, previous)
                fact.first_seen = previous.first_seen
            else:
                fact.first_seen = now
            fact.last_seen = now

            profile.facts[fact.key] = fact
            profile.updated_at = now

            txn.put(profile_key(chat_id), encode_record(profile, profile_key(chat_id)))
            txn.put(fact_key(chat_id, fact.key), encode_record(fact, fact_key(chat_id, fact.key)))

        action = "Updated" if previous is not None else "Stored new"
        logger.debug(f"{action} fact {fact.key} for chat {chat_id} (confidence: {fact.confidence:.2f})")
        return fact

    def get_profile_fact(
        self,
        chat_id: str,
        key: str,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[ProfileFact]:
        """Current value of one fact, or None."""
        storage_key = fact_key(chat_id, key)
        raw = self.env.get(storage_key, cancel=cancel)
        if raw is None:
            return None
        return decode_record(ProfileFact, raw, storage_key)

    def delete_profile_fact(
        self,
        chat_id: str,
        key: str,
        cancel: Optional[CancellationToken] = None,
    ) -> bool:
        """
        Remove a fact, archiving its last value to history.

        Returns:
            True if the fact existed
        """
        with self.env.begin(write=True, cancel=cancel, operation="delete profile fact") as txn:
            profile = self._load_profile(txn, chat_id)
            existed = False
            if profile is not None and key in profile.facts:
                self._archive(txn, chat_id, profile.facts.pop(key))
                profile.updated_at = utc_now()
                txn.put(profile_key(chat_id), encode_record(profile, profile_key(chat_id)))
                existed = True
            if txn.delete(fact_key(chat_id, key)):
                existed = True

        if existed:
            logger.debug(f"Deleted fact {key} for chat {chat_id}")
        return existed

    def get_fact_history(
        self,
        chat_id: str,
        key: str,
        cancel: Optional[CancellationToken] = None,
    ) -> List[ProfileFact]:
        """Previous versions of a fact, most recent first."""
        prefix = history_prefix(chat_id, key)
        entries = []
        for storage_key, raw in self.env.scan(prefix, cancel=cancel):
            # A longer key sharing this prefix (e.g. "name:alias") is not ours
            if not storage_key[len(prefix):].isdigit():
                continue
            try:
                entries.append((decode_record(ProfileFact, raw, storage_key), storage_key))
            except SerializationError as e:
                logger.warning(f"Skipping malformed history entry: {e}")

        entries.sort(key=lambda entry: (entry[0].last_seen, entry[1]), reverse=True)
        return [fact for fact, _ in entries]

    def _load_profile(self, txn: KVTransaction, chat_id: str) -> Optional[UserProfile]:
        raw = txn.get(profile_key(chat_id))
        if raw is None:
            return None
        return decode_record(UserProfile, raw, profile_key(chat_id))

    def _archive(self, txn: KVTransaction, chat_id: str, fact: ProfileFact) -> None:
        storage_key = f"{history_prefix(chat_id, fact.key)}{time.time_ns():020d}"
        txn.put(storage_key, encode_record(fact, storage_key))
