"""Tests for default role and administrator seeding."""

import asyncio

from prodauth.service.permissions import PermissionResolver
from prodauth.service.seed import (
    DEFAULT_ADMIN_LOGIN,
    DEFAULT_ADMIN_PASSWORD,
    PERMISSION_CATALOG,
    RoleSeed,
    seed_defaults,
)


def test_seed_creates_catalog_roles_and_admin(memory_store, sessions):
    report = seed_defaults(memory_store, sessions)

    assert len(memory_store.list_permissions()) == len(PERMISSION_CATALOG)
    assert report.roles_created == ["Admin", "Manager", "User"]
    assert report.admin_created is True

    admin = memory_store.get_user_by_login(DEFAULT_ADMIN_LOGIN)
    assert [r.name for r in memory_store.list_user_roles(admin.id)] == ["Admin"]
    assert PermissionResolver(memory_store).is_super_admin(admin.id) is True

    result = asyncio.run(sessions.login(DEFAULT_ADMIN_LOGIN, DEFAULT_ADMIN_PASSWORD))
    assert result.user.id == admin.id


def test_seed_is_idempotent(memory_store, sessions):
    first = seed_defaults(memory_store, sessions)
    second = seed_defaults(memory_store, sessions)

    assert second.roles_created == []
    assert second.grants_created == 0
    assert second.admin_created is False
    assert second.admin_user_id == first.admin_user_id
    assert len(memory_store.list_roles()) == 3


def test_seed_keeps_edited_grants(memory_store, sessions):
    seed_defaults(memory_store, sessions)
    role = memory_store.get_role_by_name("User")
    perm = memory_store.get_permission("leave", "approve")
    memory_store.set_role_permission(role.id, perm.id, 2)

    seed_defaults(memory_store, sessions)

    levels = {g.key: g.value for g in memory_store.list_role_permissions(role.id)}
    assert levels["leave.approve"] == 2


def test_manager_levels(memory_store, sessions):
    seed_defaults(memory_store, sessions)
    role = memory_store.get_role_by_name("Manager")
    levels = {g.key: g.value for g in memory_store.list_role_permissions(role.id)}
    assert levels["users.read"] == 2
    assert levels["users.delete"] == 0
    assert levels["timeTracking.manageSettings"] == 1


def test_custom_roles_without_admin_role(memory_store, sessions):
    report = seed_defaults(
        memory_store,
        sessions,
        admin_login="owner",
        roles=[RoleSeed(name="Auditor", description="Read only", levels={"reports.read": 1})],
    )
    owner = memory_store.get_user_by_login("owner")
    assert report.roles_created == ["Auditor"]
    assert memory_store.list_user_roles(owner.id) == []
    assert memory_store.get_permission("reports", "read") is not None
