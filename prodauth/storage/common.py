"""Common storage contract and helpers shared between memory and postgres implementations.

``CredentialStore`` is the only seam the auth services depend on; both
backends implement it structurally.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from prodauth.storage.errors import ConstraintViolation
from prodauth.storage.models import (
    Permission,
    PermissionGrant,
    RefreshToken,
    Role,
    User,
)


class CredentialStore(Protocol):
    # users
    def create_user(
        self,
        login: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_login(self, login: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...

    def touch_last_login(self, user_id: str, at: datetime) -> None: ...

    def touch_last_activity(self, user_id: str, at: datetime) -> None: ...

    # roles and permissions
    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_super_admin: bool = False,
        grants: Optional[Dict[str, int]] = None,
    ) -> Role: ...

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        grants: Optional[Dict[str, int]] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def count_role_users(self, role_id: str) -> int: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def create_permission(
        self, module: str, action: str, description: Optional[str] = None
    ) -> Permission: ...

    def get_permission(self, module: str, action: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def assign_role(self, user_id: str, role_id: str) -> None: ...

    def unassign_role(self, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...

    def set_role_permission(self, role_id: str, permission_id: str, value: int) -> None: ...

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def list_role_permissions(self, role_id: str) -> List[PermissionGrant]: ...

    def list_role_grants(self, user_id: str) -> List[PermissionGrant]: ...

    def set_user_permission(self, user_id: str, permission_id: str, value: int) -> None: ...

    def remove_user_permission(self, user_id: str, permission_id: str) -> bool: ...

    def list_user_overrides(self, user_id: str) -> List[PermissionGrant]: ...

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def consume_refresh_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_tokens(self, token: str, user_id: str) -> int: ...


def normalize_login(login: str) -> str:
    """Logins are compared after trimming surrounding whitespace."""

    normalized = (login or "").strip()
    if not normalized:
        raise ConstraintViolation("login must not be empty", {"field": "login"})
    return normalized


def validate_permission_value(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConstraintViolation(
            "permission value must be a non-negative integer", {"field": "value"}
        )
    return value


def split_permission_key(key: str) -> Tuple[str, str]:
    """Split ``"module.action"`` into its parts."""

    module, sep, action = key.partition(".")
    if not sep or not module or not action:
        raise ConstraintViolation(
            "permission key must look like 'module.action'", {"key": key}
        )
    return module, action


__all__ = [
    "CredentialStore",
    "normalize_login",
    "split_permission_key",
    "validate_permission_value",
]
