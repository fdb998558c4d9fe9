"""Tests for the per-request authorization gate."""

import pytest

from prodauth.config import PermissionSource
from prodauth.service.errors import Forbidden, Unauthenticated
from prodauth.service.gate import AuthorizationGate, extract_bearer
from prodauth.service.permissions import PermissionResolver


@pytest.fixture
def resolver(memory_store):
    return PermissionResolver(memory_store)


@pytest.fixture
def snapshot_gate(codec, resolver):
    return AuthorizationGate(codec, resolver)


@pytest.fixture
def live_gate(codec, resolver):
    return AuthorizationGate(codec, resolver, permission_source=PermissionSource.LIVE)


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer token", "token"),
            ("Basic dXNlcjpwdw==", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected
        assert AuthorizationGate.extract_bearer(header) == expected


class TestAuthenticate:
    def test_missing_token(self, snapshot_gate):
        with pytest.raises(Unauthenticated) as exc_info:
            snapshot_gate.authenticate(None)
        assert exc_info.value.reason == "missing"

    def test_expired_token_keeps_reason(self, snapshot_gate, codec, clock):
        token = codec.issue_access_token("user-1", [], {})
        clock.advance(minutes=31)
        with pytest.raises(Unauthenticated) as exc_info:
            snapshot_gate.authenticate(token)
        assert exc_info.value.reason == "expired"
        assert exc_info.value.detail == {"reason": "expired"}

    def test_malformed_token(self, snapshot_gate):
        with pytest.raises(Unauthenticated) as exc_info:
            snapshot_gate.authenticate("junk")
        assert exc_info.value.reason == "malformed"

    def test_valid_token(self, snapshot_gate, codec):
        token = codec.issue_access_token("user-1", ["r"], {"users.read": 1})
        assert snapshot_gate.authenticate(token).user_id == "user-1"


class TestAuthorize:
    def test_sufficient_level_passes(self, snapshot_gate, codec):
        claims = codec.verify_access(codec.issue_access_token("u", [], {"users.read": 2}))
        snapshot_gate.authorize(claims, "users", "read")
        snapshot_gate.authorize(claims, "users", "read", minimum_level=2)

    def test_insufficient_level_reports_values(self, snapshot_gate, codec):
        claims = codec.verify_access(codec.issue_access_token("u", [], {"users.read": 1}))
        with pytest.raises(Forbidden) as exc_info:
            snapshot_gate.authorize(claims, "users", "read", minimum_level=2)
        assert exc_info.value.detail == {
            "required_permission": "users.read",
            "required_value": 2,
            "actual_value": 1,
        }
        assert exc_info.value.status_code == 403

    def test_missing_key_counts_as_zero(self, snapshot_gate, codec):
        claims = codec.verify_access(codec.issue_access_token("u", [], {}))
        with pytest.raises(Forbidden) as exc_info:
            snapshot_gate.authorize(claims, "leave", "approve")
        assert exc_info.value.actual_value == 0

    def test_super_admin_bypasses_checks(self, snapshot_gate, codec):
        claims = codec.verify_access(
            codec.issue_access_token("u", [], {}, super_admin=True)
        )
        snapshot_gate.authorize(claims, "anything", "at_all", minimum_level=99)


class TestPermissionSource:
    """Snapshot trusts the token; live re-reads the store."""

    @pytest.fixture
    def user_with_grant(self, memory_store):
        user = memory_store.create_user("anna")
        perm = memory_store.create_permission("users", "read")
        role = memory_store.create_role("Reader")
        memory_store.set_role_permission(role.id, perm.id, 2)
        memory_store.assign_role(user.id, role.id)
        return user, role, perm

    def _claims_for(self, codec, resolver, user_id):
        return codec.verify_access(
            codec.issue_access_token(user_id, [], resolver.resolve(user_id))
        )

    def test_snapshot_keeps_stale_grant(
        self, snapshot_gate, codec, resolver, memory_store, user_with_grant
    ):
        user, role, perm = user_with_grant
        claims = self._claims_for(codec, resolver, user.id)
        memory_store.remove_role_permission(role.id, perm.id)

        snapshot_gate.authorize(claims, "users", "read", minimum_level=2)

    def test_live_sees_revocation(
        self, live_gate, codec, resolver, memory_store, user_with_grant
    ):
        user, role, perm = user_with_grant
        claims = self._claims_for(codec, resolver, user.id)
        memory_store.remove_role_permission(role.id, perm.id)

        with pytest.raises(Forbidden) as exc_info:
            live_gate.authorize(claims, "users", "read")
        assert exc_info.value.actual_value == 0

    def test_live_sees_new_super_admin_role(self, live_gate, codec, memory_store):
        user = memory_store.create_user("root")
        claims = codec.verify_access(codec.issue_access_token(user.id, [], {}))
        with pytest.raises(Forbidden):
            live_gate.authorize(claims, "users", "delete")

        admin = memory_store.create_role("Admin", is_super_admin=True)
        memory_store.assign_role(user.id, admin.id)
        live_gate.authorize(claims, "users", "delete")
