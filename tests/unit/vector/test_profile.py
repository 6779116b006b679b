"""
Unit tests for user profile facts.

Tests for:
- Upsert (last write wins) with first_seen preservation
- Fact history on overwrite and delete, newest first
- Whole-profile replacement
- Key scheme isolation from messages/documents/chunks
"""

import json

import pytest

from vector.contracts.models import FactSource, ProfileFact, UserProfile
from vector.core.exceptions import SerializationError
from vector.profile import fact_key, history_prefix, profile_key


class TestKeyScheme:
    """Tests for profile key helpers."""

    def test_keys_do_not_collide_with_records(self):
        """Test profile keys never start with a record prefix."""
        for key in (profile_key("c1"), fact_key("c1", "name"), history_prefix("c1", "name")):
            assert not key.startswith(("msg:", "doc:", "chunk:"))

    def test_layout(self):
        """Test the documented key layout."""
        assert profile_key("c1") == "profile:c1"
        assert fact_key("c1", "name") == "profile_fact:c1:name"
        assert history_prefix("c1", "name") == "profile_history:c1:name:"


class TestUpsert:
    """Tests for upsert_profile_fact/get_profile_fact."""

    def test_insert_and_get(self, store, open_chat):
        """Test a new fact is readable by key."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name", value="Ada", confidence=0.9))

        fact = store.get_profile_fact(open_chat.id, "name")
        assert fact.value == "Ada"
        assert fact.confidence == 0.9
        assert fact.source is FactSource.EXPLICIT

    def test_missing_fact(self, store, open_chat):
        """Test an unknown key returns None."""
        assert store.get_profile_fact(open_chat.id, "nope") is None

    def test_last_write_wins(self, store, open_chat):
        """Test overwriting keeps the latest value and the first first_seen."""
        first = store.upsert_profile_fact(open_chat.id, ProfileFact(key="city", value="Oslo"))
        second = store.upsert_profile_fact(
            open_chat.id, ProfileFact(key="city", value="Bergen", source=FactSource.INFERRED)
        )

        fact = store.get_profile_fact(open_chat.id, "city")
        assert fact.value == "Bergen"
        assert fact.source is FactSource.INFERRED
        assert fact.first_seen == first.first_seen
        assert second.last_seen >= first.last_seen

    def test_profile_reflects_facts(self, store, open_chat):
        """Test the aggregate profile holds every current fact."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name", value="Ada"))
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="lang", value="Python"))

        profile = store.get_user_profile(open_chat.id)

        assert profile.chat_id == open_chat.id
        assert sorted(profile.facts) == ["lang", "name"]

    def test_facts_are_per_chat(self, store, open_chat):
        """Test facts are namespaced by chat ID."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name", value="Ada"))

        assert store.get_profile_fact("another-chat", "name") is None
        assert store.get_user_profile("another-chat").facts == {}

    def test_facts_not_visible_as_messages(self, store, open_chat):
        """Test profile data does not leak into message or document scans."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name", value="Ada"))

        assert store.get_messages() == []
        assert store.get_documents() == []


class TestHistory:
    """Tests for get_fact_history."""

    def test_history_newest_first(self, store, open_chat):
        """Test replaced versions are returned most recent first."""
        for value in ("v1", "v2", "v3"):
            store.upsert_profile_fact(open_chat.id, ProfileFact(key="mood", value=value))

        history = store.get_fact_history(open_chat.id, "mood")

        assert [f.value for f in history] == ["v2", "v1"]
        assert store.get_profile_fact(open_chat.id, "mood").value == "v3"

    def test_no_history_for_new_fact(self, store, open_chat):
        """Test a fact written once has no history."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="mood", value="calm"))

        assert store.get_fact_history(open_chat.id, "mood") == []

    def test_history_ignores_keys_sharing_prefix(self, store, open_chat):
        """Test history for "name" excludes "name:alias"."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name", value="Ada"))
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name", value="Ada L."))
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name:alias", value="AL"))
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="name:alias", value="Countess"))

        assert [f.value for f in store.get_fact_history(open_chat.id, "name")] == ["Ada"]
        assert [f.value for f in store.get_fact_history(open_chat.id, "name:alias")] == ["AL"]


class TestDelete:
    """Tests for delete_profile_fact."""

    def test_delete_existing(self, store, open_chat):
        """Test delete removes the fact and archives it."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="pet", value="cat"))

        assert store.delete_profile_fact(open_chat.id, "pet") is True
        assert store.get_profile_fact(open_chat.id, "pet") is None
        assert "pet" not in store.get_user_profile(open_chat.id).facts
        assert [f.value for f in store.get_fact_history(open_chat.id, "pet")] == ["cat"]

    def test_delete_missing(self, store, open_chat):
        """Test deleting an unknown key returns False."""
        assert store.delete_profile_fact(open_chat.id, "pet") is False


class TestStoreUserProfile:
    """Tests for whole-profile replacement."""

    def test_replaces_facts(self, store, open_chat):
        """Test facts absent from the new profile are removed."""
        store.upsert_profile_fact(open_chat.id, ProfileFact(key="old", value="x"))

        store.store_user_profile(UserProfile(
            chat_id=open_chat.id,
            facts={"new": ProfileFact(key="new", value="y")},
        ))

        assert store.get_profile_fact(open_chat.id, "old") is None
        assert store.get_profile_fact(open_chat.id, "new").value == "y"
        assert list(store.get_user_profile(open_chat.id).facts) == ["new"]

    def test_empty_profile_by_default(self, store, open_chat):
        """Test a chat without facts has an empty profile."""
        profile = store.get_user_profile(open_chat.id)

        assert profile.facts == {}

    def test_malformed_profile_raises(self, store, open_chat):
        """Test a stored profile with a non-object facts field raises SerializationError."""
        store.session.env.put(
            profile_key(open_chat.id),
            json.dumps({"chat_id": open_chat.id, "facts": [1], "updated_at": "2024-01-01T00:00:00"}),
        )

        with pytest.raises(SerializationError):
            store.get_user_profile(open_chat.id)


@pytest.mark.parametrize("confidence", [0.0, 0.5, 1.0])
def test_confidence_persisted(store, open_chat, confidence):
    """Test confidence values survive storage."""
    store.upsert_profile_fact(open_chat.id, ProfileFact(key="k", value="v", confidence=confidence))

    assert store.get_profile_fact(open_chat.id, "k").confidence == confidence
