from __future__ import annotations

from typing import Dict, List, Mapping

from prodauth.logging import get_logger
from prodauth.storage.common import CredentialStore
from prodauth.storage.models import Permission

logger = get_logger(__name__)


def nest_permissions(flat: Mapping[str, int]) -> Dict[str, Dict[str, int]]:
    """Turn ``{"users.read": 2}`` into ``{"users": {"read": 2}}``."""

    nested: Dict[str, Dict[str, int]] = {}
    for key, value in flat.items():
        module, _, action = key.partition(".")
        nested.setdefault(module, {})[action] = value
    return nested


class PermissionResolver:
    """Computes a user's effective permission map.

    Role grants are folded with MAX per ``module.action``; every user
    override then replaces the aggregated value, including with a lower
    one or ``0``. Keys absent from the result mean no access. Nothing is
    cached here: each call reads the store.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def resolve(self, user_id: str) -> Dict[str, int]:
        effective: Dict[str, int] = {}
        for grant in self.store.list_role_grants(user_id):
            current = effective.get(grant.key)
            if current is None or grant.value > current:
                effective[grant.key] = grant.value
        overrides = self.store.list_user_overrides(user_id)
        for grant in overrides:
            effective[grant.key] = grant.value
        logger.debug(
            "permissions_resolved",
            user_id=user_id,
            keys=len(effective),
            overrides=len(overrides),
        )
        return effective

    def is_super_admin(self, user_id: str) -> bool:
        return any(role.is_super_admin for role in self.store.list_user_roles(user_id))

    def permission_catalog(self) -> Dict[str, List[Permission]]:
        catalog: Dict[str, List[Permission]] = {}
        for perm in self.store.list_permissions():
            catalog.setdefault(perm.module, []).append(perm)
        return catalog
