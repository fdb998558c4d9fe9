"""Default roles, permission catalog and administrator account.

Seeding is idempotent: existing roles, permissions, grants and users are
left as they are, so it is safe to run against a live database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from prodauth.logging import get_logger
from prodauth.service.sessions import SessionManager
from prodauth.storage.common import CredentialStore, split_permission_key

logger = get_logger(__name__)

DEFAULT_ADMIN_LOGIN = "admin"
DEFAULT_ADMIN_PASSWORD = "admin123"

# (module, action, description)
PERMISSION_CATALOG: List[Tuple[str, str, str]] = [
    ("users", "read", "View users"),
    ("users", "create", "Create users"),
    ("users", "update", "Update users"),
    ("users", "delete", "Delete users"),
    ("roles", "read", "View roles"),
    ("roles", "create", "Create roles"),
    ("roles", "update", "Update roles"),
    ("roles", "delete", "Delete roles"),
    ("permissions", "read", "View permissions"),
    ("permissions", "assign", "Assign permissions"),
    ("timeTracking", "read", "View time tracking"),
    ("timeTracking", "create", "Create time tracking sessions"),
    ("timeTracking", "update", "Update time tracking sessions"),
    ("timeTracking", "delete", "Delete time tracking sessions"),
    ("timeTracking", "manageSettings", "Manage time tracking settings"),
    ("timeTracking", "viewReports", "View time tracking reports"),
    ("timeTracking", "exportReports", "Export time tracking reports"),
    ("timeTracking", "viewAll", "View all users time tracking"),
    ("leave", "read", "View leave requests"),
    ("leave", "create", "Create leave requests"),
    ("leave", "update", "Update leave requests"),
    ("leave", "delete", "Delete leave requests"),
    ("leave", "approve", "Approve or reject leave requests"),
    ("leave", "manageTypes", "Manage leave types"),
    ("leave", "viewAll", "View all users leave requests"),
]


@dataclass
class RoleSeed:
    name: str
    description: str
    is_super_admin: bool = False
    # "module.action" -> level
    levels: Dict[str, int] = field(default_factory=dict)


def _levels(default: int, overrides: Optional[Dict[str, int]] = None) -> Dict[str, int]:
    levels = {f"{module}.{action}": default for module, action, _ in PERMISSION_CATALOG}
    levels.update(overrides or {})
    return levels


DEFAULT_ROLES: List[RoleSeed] = [
    RoleSeed(
        name="Admin",
        description="Administrator with full access",
        is_super_admin=True,
        levels=_levels(3),
    ),
    RoleSeed(
        name="Manager",
        description="Manager with access to most features",
        levels=_levels(
            2,
            {
                "users.delete": 0,
                "roles.create": 0,
                "roles.update": 0,
                "roles.delete": 0,
                "permissions.assign": 0,
                "timeTracking.delete": 0,
                "timeTracking.manageSettings": 1,
                "leave.delete": 0,
                "leave.manageTypes": 0,
            },
        ),
    ),
    RoleSeed(
        name="User",
        description="Regular user with limited access",
        levels=_levels(
            0,
            {
                "users.read": 1,
                "roles.read": 1,
                "timeTracking.read": 1,
                "timeTracking.create": 1,
                "timeTracking.update": 1,
                "timeTracking.viewReports": 1,
                "leave.read": 1,
                "leave.create": 1,
                "leave.update": 1,
            },
        ),
    ),
]


@dataclass
class SeedReport:
    roles_created: List[str] = field(default_factory=list)
    grants_created: int = 0
    admin_user_id: Optional[str] = None
    admin_created: bool = False


def seed_defaults(
    store: CredentialStore,
    sessions: SessionManager,
    *,
    admin_login: str = DEFAULT_ADMIN_LOGIN,
    admin_password: str = DEFAULT_ADMIN_PASSWORD,
    admin_email: Optional[str] = "admin@example.com",
    roles: Optional[List[RoleSeed]] = None,
) -> SeedReport:
    report = SeedReport()
    permissions = {
        f"{module}.{action}": store.create_permission(module, action, description)
        for module, action, description in PERMISSION_CATALOG
    }

    role_ids: Dict[str, str] = {}
    for seed in roles if roles is not None else DEFAULT_ROLES:
        role = store.get_role_by_name(seed.name)
        if not role:
            role = store.create_role(
                seed.name, seed.description, is_super_admin=seed.is_super_admin
            )
            report.roles_created.append(role.name)
        role_ids[seed.name] = role.id
        existing = {grant.key for grant in store.list_role_permissions(role.id)}
        for key, value in seed.levels.items():
            if key in existing:
                continue
            perm = permissions.get(key)
            if perm is None:
                module, action = split_permission_key(key)
                perm = store.create_permission(module, action)
            store.set_role_permission(role.id, perm.id, value)
            report.grants_created += 1

    admin = store.get_user_by_login(admin_login)
    if admin is None:
        admin = store.create_user(
            admin_login, first_name="Admin", last_name="User", email=admin_email
        )
        sessions.save_password(admin.id, admin_password)
        if "Admin" in role_ids:
            store.assign_role(admin.id, role_ids["Admin"])
        report.admin_created = True
    report.admin_user_id = admin.id

    logger.info(
        "seed_completed",
        roles_created=report.roles_created,
        grants_created=report.grants_created,
        admin_created=report.admin_created,
    )
    return report
