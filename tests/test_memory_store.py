"""Tests for the in-memory store and its JSON snapshot persistence."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from teamsync.service.permissions import Role
from teamsync.storage.errors import ConstraintViolation, StoreUnavailable
from teamsync.storage.memory import MemoryStore
from teamsync.storage.models import ProviderKind, utcnow

TOKEN_KEY = "memory-store-token-key-0123456789abcdef"


@pytest.fixture
def store():
    return MemoryStore(token_key=TOKEN_KEY)


class TestIdentities:
    def test_email_is_normalized_and_unique(self, store):
        identity = store.create_identity("  Alice@Example.COM ")
        assert identity.email == "alice@example.com"
        with pytest.raises(ConstraintViolation):
            store.create_identity("alice@example.com")
        assert store.find_identity_by_email("ALICE@example.com").id == identity.id

    def test_provider_subject_bound_to_one_identity(self, store):
        first = store.create_identity("first@example.com")
        second = store.create_identity("second@example.com")
        store.link_provider(first.id, ProviderKind.GOOGLE, "google-123")
        with pytest.raises(ConstraintViolation):
            store.link_provider(second.id, ProviderKind.GOOGLE, "google-123")
        # relinking the same pair is a no-op
        store.link_provider(first.id, ProviderKind.GOOGLE, "google-123")
        assert store.find_identity_by_provider(ProviderKind.GOOGLE, "google-123").id == first.id

    def test_refresh_token_encrypted_at_rest(self, store):
        identity = store.create_identity("oauth@example.com")
        store.link_provider(
            identity.id, ProviderKind.GOOGLE, "google-1", refresh_token="refresh-secret"
        )
        raw = store.providers[0].refresh_token
        assert raw and raw != "refresh-secret"
        assert store.get_provider_link(ProviderKind.GOOGLE, "google-1").refresh_token == "refresh-secret"

    def test_current_workspace_must_exist(self, store):
        identity = store.create_identity("a@example.com")
        with pytest.raises(ConstraintViolation):
            store.set_current_workspace(identity.id, "nope")


class WorkspaceOutage(MemoryStore):
    def create_workspace(self, name, owner_id, *, description=None):
        raise StoreUnavailable("connection reset", backend="postgres")


class TestProvisioning:
    def _provision(self, store, email="new@example.com", subject="new@example.com"):
        return store.provision_identity(
            email,
            "New",
            provider=ProviderKind.EMAIL,
            provider_subject=subject,
            workspace_name="My Workspace",
            owner_role=Role.OWNER.value,
            password_hash="hash-value",
        )

    def test_creates_everything(self, store):
        identity, workspace = self._provision(store)
        assert identity.current_workspace_id == workspace.id
        assert store.get_membership(identity.id, workspace.id).role == Role.OWNER.value
        assert store.get_password_hash(identity.id) == "hash-value"
        assert store.find_identity_by_provider(ProviderKind.EMAIL, "new@example.com").id == identity.id

    def test_failure_midway_leaves_nothing_behind(self, tmp_path):
        store = WorkspaceOutage(fs_root=str(tmp_path), token_key=TOKEN_KEY)
        with pytest.raises(StoreUnavailable):
            self._provision(store)
        assert store.identities == {}
        assert store.credentials == {}
        assert store.providers == []
        reloaded = MemoryStore(fs_root=str(tmp_path), token_key=TOKEN_KEY)
        assert reloaded.find_identity_by_email("new@example.com") is None

    def test_conflicting_provider_link_rolls_back(self, store):
        existing = store.create_identity("taken@example.com")
        store.link_provider(existing.id, ProviderKind.EMAIL, "shared-subject")
        with pytest.raises(ConstraintViolation):
            self._provision(store, subject="shared-subject")
        assert store.find_identity_by_email("new@example.com") is None
        assert list(store.identities) == [existing.id]


class TestMemberships:
    def test_one_membership_per_pair(self, store):
        owner = store.create_identity("owner@example.com")
        workspace = store.create_workspace("Team", owner.id)
        store.add_membership(owner.id, workspace.id, Role.OWNER.value)
        with pytest.raises(ConstraintViolation):
            store.add_membership(owner.id, workspace.id, Role.MEMBER.value)

    def test_invite_codes_are_distinct(self, store):
        owner = store.create_identity("owner@example.com")
        codes = {store.create_workspace(f"ws-{i}", owner.id).invite_code for i in range(20)}
        assert len(codes) == 20


class TestSessions:
    def test_revoke_identity_sessions(self, store):
        identity = store.create_identity("a@example.com")
        first = store.create_session(identity.id, ttl_minutes=5)
        second = store.create_session(identity.id, ttl_minutes=5)
        store.revoke_identity_sessions(identity.id)
        assert store.get_session(first.id) is None
        assert store.get_session(second.id) is None

    def test_revoke_unknown_session_is_noop(self, store):
        store.revoke_session("missing")

    def test_expired_session_is_dropped_on_lookup(self, store):
        identity = store.create_identity("a@example.com")
        sess = store.create_session(identity.id, ttl_minutes=5)
        store.sessions[sess.id] = replace(sess, expires_at=utcnow() - timedelta(seconds=1))
        assert store.get_session(sess.id) is None
        assert sess.id not in store.sessions

    def test_create_sweeps_expired_sessions(self, store):
        identity = store.create_identity("a@example.com")
        old = store.create_session(identity.id, ttl_minutes=5)
        store.sessions[old.id] = replace(old, expires_at=utcnow() - timedelta(minutes=1))
        fresh = store.create_session(identity.id, ttl_minutes=5)
        assert list(store.sessions) == [fresh.id]


class TestPersistence:
    def test_state_reloads_from_snapshot(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), token_key=TOKEN_KEY)
        owner = store.create_identity("owner@example.com", "Owner")
        store.set_password(owner.id, "hash-value")
        store.link_provider(owner.id, ProviderKind.GITHUB, "gh-1", refresh_token="rt")
        workspace = store.create_workspace("Team", owner.id)
        store.add_membership(owner.id, workspace.id, Role.OWNER.value)
        store.set_current_workspace(owner.id, workspace.id)
        store.touch_last_login(owner.id, datetime(2024, 1, 1, tzinfo=timezone.utc))
        session = store.create_session(owner.id, ttl_minutes=5)

        reloaded = MemoryStore(fs_root=str(tmp_path), token_key=TOKEN_KEY)

        identity = reloaded.find_identity_by_id(owner.id)
        assert identity.current_workspace_id == workspace.id
        assert identity.last_login == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert reloaded.get_password_hash(owner.id) == "hash-value"
        assert reloaded.get_membership(owner.id, workspace.id).role == Role.OWNER.value
        assert reloaded.get_workspace_by_invite_code(workspace.invite_code).id == workspace.id
        assert reloaded.get_session(session.id).identity_id == owner.id
        assert reloaded.get_provider_link(ProviderKind.GITHUB, "gh-1").refresh_token == "rt"
