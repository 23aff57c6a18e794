"""Unit tests for the in-memory store.

Tests for:
- User creation and lookup
- Refresh record insertion and snapshots
- The rotation compare-and-set
- Family revocation and expiry purge
"""

import threading
from datetime import timedelta

import pytest

from bynd.storage.errors import ConstraintViolation
from bynd.storage.memory import MemoryStore
from bynd.storage.models import RefreshTokenRecord, utcnow


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("test@example.com", "$argon2id$stub")


def _record(jti, user_id, family_id="fam-1", *, token_hash=None, expires_in=timedelta(days=7)):
    now = utcnow()
    return RefreshTokenRecord(
        jti=jti,
        token_hash=token_hash or f"hash-{jti}",
        user_id=user_id,
        family_id=family_id,
        created_at=now,
        expires_at=now + expires_in,
    )


class TestUserOperations:
    def test_create_and_lookup(self, memory_store, test_user):
        assert memory_store.get_user(test_user.id).email == "test@example.com"
        assert memory_store.get_user_by_email("TEST@example.com").id == test_user.id
        assert memory_store.get_password_record(test_user.id) == ("$argon2id$stub", "argon2id")

    def test_duplicate_email_is_constraint_violation(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("Test@Example.com", "$argon2id$other")
        assert excinfo.value.detail == {"field": "email"}

    def test_missing_user(self, memory_store):
        assert memory_store.get_user("nope") is None
        assert memory_store.get_user_by_email("nobody@example.com") is None
        assert memory_store.get_password_record("nope") is None


class TestRefreshRecords:
    def test_lookup_by_hash_returns_snapshot(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("a", test_user.id))

        snapshot = memory_store.get_refresh_token_by_hash("hash-a")
        snapshot.revoked = True

        assert memory_store.get_refresh_token("a").revoked is False

    def test_duplicate_hash_rejected(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("a", test_user.id, token_hash="same"))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_refresh_token(_record("b", test_user.id, token_hash="same"))

    def test_mark_replaced_is_compare_and_set(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("a", test_user.id))

        assert memory_store.mark_refresh_token_replaced("a", "b") is True
        assert memory_store.mark_refresh_token_replaced("a", "c") is False
        assert memory_store.get_refresh_token("a").replaced_by_jti == "b"
        assert memory_store.mark_refresh_token_replaced("missing", "x") is False

    def test_cas_has_one_winner_across_threads(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("a", test_user.id))
        wins = []
        barrier = threading.Barrier(8)

        def contend(n):
            barrier.wait()
            if memory_store.mark_refresh_token_replaced("a", f"succ-{n}"):
                wins.append(n)

        threads = [threading.Thread(target=contend, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(wins) == 1
        assert memory_store.get_refresh_token("a").replaced_by_jti == f"succ-{wins[0]}"

    def test_revoke_family(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("a", test_user.id, "fam-1"))
        memory_store.insert_refresh_token(_record("b", test_user.id, "fam-1"))
        memory_store.insert_refresh_token(_record("c", test_user.id, "fam-2"))

        assert memory_store.revoke_refresh_family("fam-1", "TOKEN_REUSE_DETECTED") == 2
        assert [r.revoked for r in memory_store.list_refresh_family("fam-1")] == [True, True]
        assert memory_store.get_refresh_token("c").revoked is False

    def test_revoke_single_record(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("a", test_user.id))
        assert memory_store.revoke_refresh_token("a", "LOGOUT") is True
        assert memory_store.get_refresh_token("a").reason == "LOGOUT"
        assert memory_store.revoke_refresh_token("missing", "LOGOUT") is False

    def test_purge_expired(self, memory_store, test_user):
        memory_store.insert_refresh_token(_record("old", test_user.id, expires_in=timedelta(seconds=-1)))
        memory_store.insert_refresh_token(_record("new", test_user.id))

        assert memory_store.purge_expired_refresh_tokens() == 1
        assert memory_store.get_refresh_token("old") is None
        assert memory_store.get_refresh_token_by_hash("hash-old") is None
        assert memory_store.get_refresh_token("new") is not None
