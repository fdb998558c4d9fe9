from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    login: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    last_activity: Optional[datetime] = None


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str
    last_updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    is_super_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRole:
    user_id: str
    role_id: str


@dataclass
class Permission:
    """Catalog entry for a (module, action) pair."""

    id: str
    module: str
    action: str
    description: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.module}.{self.action}"


@dataclass
class RolePermission:
    role_id: str
    permission_id: str
    value: int


@dataclass
class UserPermission:
    user_id: str
    permission_id: str
    value: int


@dataclass
class PermissionGrant:
    """A (module, action, value) row joined from a role or user grant."""

    module: str
    action: str
    value: int

    @property
    def key(self) -> str:
        return f"{self.module}.{self.action}"


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        # expires_at == now already counts as expired
        return not self.revoked and self.expires_at > now


@dataclass
class UserProfile:
    """Sanitized user projection returned by login (never carries a hash)."""

    id: str
    login: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            login=user.login,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
        )


@dataclass
class RoleSummary:
    id: str
    name: str


@dataclass
class UserDetails:
    id: str
    login: str
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    phone_number: Optional[str]
    is_active: bool
    last_login: Optional[datetime]
    roles: List[RoleSummary] = field(default_factory=list)
    permissions: dict[str, int] = field(default_factory=dict)
