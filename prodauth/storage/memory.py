from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from prodauth.logging import get_logger
from prodauth.storage.common import normalize_login, validate_permission_value
from prodauth.storage.errors import ConstraintViolation
from prodauth.storage.models import (
    Permission,
    PermissionGrant,
    RefreshToken,
    Role,
    RolePermission,
    User,
    UserCredential,
    UserPermission,
    UserRole,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory credential store persisted to a JSON state file.

    Every read and write happens under one re-entrant lock, which is what
    makes ``consume_refresh_token`` an atomic compare-and-set.
    """

    def __init__(self, fs_root: str = "/tmp/prodauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: List[UserRole] = []
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[Tuple[str, str], RolePermission] = {}
        self.user_permissions: Dict[Tuple[str, str], UserPermission] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
    ) -> User:
        login = normalize_login(login)
        with self._data_lock:
            if any(existing.login == login for existing in self.users.values()):
                raise ConstraintViolation("login already exists", {"field": "login"})
            user = User(
                id=new_id(),
                login=login,
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone_number=phone_number,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_login(self, login: str) -> Optional[User]:
        login = (login or "").strip()
        with self._data_lock:
            return next((u for u in self.users.values() if u.login == login), None)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.user_roles = [ur for ur in self.user_roles if ur.user_id != user_id]
            self.user_permissions = {
                k: v for k, v in self.user_permissions.items() if v.user_id != user_id
            }
            # refresh token rows stay behind as the audit trail
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserCredential(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    def touch_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = at
                self._persist_state()

    def touch_last_activity(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_activity = at
                self._persist_state()

    # roles

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_super_admin: bool = False,
        grants: Optional[Dict[str, int]] = None,
    ) -> Role:
        """Create a role together with its ``grants`` (permission id -> level)."""
        name = (name or "").strip()
        if not name:
            raise ConstraintViolation("role name must not be empty", {"field": "name"})
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            self._check_grants(grants or {})
            role = Role(
                id=new_id(), name=name, description=description, is_super_admin=is_super_admin
            )
            self.roles[role.id] = role
            self._replace_grants(role.id, grants or {})
            self._persist_state()
            return role

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        grants: Optional[Dict[str, int]] = None,
    ) -> Optional[Role]:
        """Rename, re-describe, and when ``grants`` is given replace the role's grant set."""
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name is not None:
                name = name.strip()
                if not name:
                    raise ConstraintViolation("role name must not be empty", {"field": "name"})
                if any(r.name == name and r.id != role_id for r in self.roles.values()):
                    raise ConstraintViolation("role name already exists", {"field": "name"})
            if grants is not None:
                self._check_grants(grants)
            if name is not None:
                role.name = name
            if description is not None:
                role.description = description
            if grants is not None:
                self._replace_grants(role_id, grants)
            self._persist_state()
            return role

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles:
                return False
            assigned = self.count_role_users(role_id)
            if assigned:
                raise ConstraintViolation(
                    "role is assigned to users", {"role_id": role_id, "user_count": assigned}
                )
            del self.roles[role_id]
            self._replace_grants(role_id, {})
            self._persist_state()
            return True

    def count_role_users(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for ur in self.user_roles if ur.role_id == role_id)

    def _check_grants(self, grants: Dict[str, int]) -> None:
        for permission_id, value in grants.items():
            validate_permission_value(value)
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )

    def _replace_grants(self, role_id: str, grants: Dict[str, int]) -> None:
        self.role_permissions = {
            k: v for k, v in self.role_permissions.items() if v.role_id != role_id
        }
        for permission_id, value in grants.items():
            self.role_permissions[(role_id, permission_id)] = RolePermission(
                role_id=role_id, permission_id=permission_id, value=value
            )

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.name == name), None)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.name)

    def assign_role(self, user_id: str, role_id: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if any(
                ur.user_id == user_id and ur.role_id == role_id for ur in self.user_roles
            ):
                return
            self.user_roles.append(UserRole(user_id=user_id, role_id=role_id))
            self._persist_state()

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            before = len(self.user_roles)
            self.user_roles = [
                ur
                for ur in self.user_roles
                if not (ur.user_id == user_id and ur.role_id == role_id)
            ]
            removed = len(self.user_roles) != before
            if removed:
                self._persist_state()
            return removed

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[ur.role_id]
                for ur in self.user_roles
                if ur.user_id == user_id and ur.role_id in self.roles
            ]
            return sorted(roles, key=lambda r: r.name)

    # permissions

    def create_permission(
        self, module: str, action: str, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            existing = self.get_permission(module, action)
            if existing:
                if description and existing.description != description:
                    existing.description = description
                    self._persist_state()
                return existing
            perm = Permission(
                id=new_id(), module=module, action=action, description=description
            )
            self.permissions[perm.id] = perm
            self._persist_state()
            return perm

    def get_permission(self, module: str, action: str) -> Optional[Permission]:
        with self._data_lock:
            return next(
                (
                    p
                    for p in self.permissions.values()
                    if p.module == module and p.action == action
                ),
                None,
            )

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: (p.module, p.action))

    def set_role_permission(self, role_id: str, permission_id: str, value: int) -> None:
        validate_permission_value(value)
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            self.role_permissions[(role_id, permission_id)] = RolePermission(
                role_id=role_id, permission_id=permission_id, value=value
            )
            self._persist_state()

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            removed = self.role_permissions.pop((role_id, permission_id), None) is not None
            if removed:
                self._persist_state()
            return removed

    def list_role_permissions(self, role_id: str) -> List[PermissionGrant]:
        with self._data_lock:
            grants = []
            for (owner_id, permission_id), rp in self.role_permissions.items():
                perm = self.permissions.get(permission_id)
                if owner_id == role_id and perm:
                    grants.append(
                        PermissionGrant(module=perm.module, action=perm.action, value=rp.value)
                    )
            return grants

    def list_role_grants(self, user_id: str) -> List[PermissionGrant]:
        with self._data_lock:
            role_ids = {ur.role_id for ur in self.user_roles if ur.user_id == user_id}
            grants = []
            for (role_id, permission_id), rp in self.role_permissions.items():
                if role_id not in role_ids:
                    continue
                perm = self.permissions.get(permission_id)
                if perm:
                    grants.append(
                        PermissionGrant(module=perm.module, action=perm.action, value=rp.value)
                    )
            return grants

    def set_user_permission(self, user_id: str, permission_id: str, value: int) -> None:
        validate_permission_value(value)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            self.user_permissions[(user_id, permission_id)] = UserPermission(
                user_id=user_id, permission_id=permission_id, value=value
            )
            self._persist_state()

    def remove_user_permission(self, user_id: str, permission_id: str) -> bool:
        with self._data_lock:
            removed = self.user_permissions.pop((user_id, permission_id), None) is not None
            if removed:
                self._persist_state()
            return removed

    def list_user_overrides(self, user_id: str) -> List[PermissionGrant]:
        with self._data_lock:
            grants = []
            for (owner_id, permission_id), up in self.user_permissions.items():
                if owner_id != user_id:
                    continue
                perm = self.permissions.get(permission_id)
                if perm:
                    grants.append(
                        PermissionGrant(module=perm.module, action=perm.action, value=up.value)
                    )
            return grants

    # refresh tokens

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            existing = self.refresh_tokens.get(token)
            if existing:
                # Re-inserting the same token is a no-op so retries stay safe
                return existing
            record = RefreshToken(
                id=new_id(), token=token, user_id=user_id, expires_at=expires_at
            )
            self.refresh_tokens[token] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def consume_refresh_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.user_id != user_id or not record.is_active(now):
                return None
            record.revoked = True
            self._persist_state()
            return record

    def revoke_refresh_tokens(self, token: str, user_id: str) -> int:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.user_id != user_id or record.revoked:
                return 0
            record.revoked = True
            self._persist_state()
            return 1

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def clear(self) -> None:
        """Drop every record, including the persisted state file."""
        with self._data_lock:
            self.users.clear()
            self.credentials.clear()
            self.roles.clear()
            self.user_roles = []
            self.permissions.clear()
            self.role_permissions.clear()
            self.user_permissions.clear()
            self.refresh_tokens.clear()
            self._persist_state()

    # persistence

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": c.user_id,
                    "password_hash": c.password_hash,
                    "password_algo": c.password_algo,
                    "last_updated_at": self._serialize_datetime(c.last_updated_at),
                }
                for c in self.credentials.values()
            ],
            "roles": [
                {
                    "id": r.id,
                    "name": r.name,
                    "description": r.description,
                    "is_super_admin": r.is_super_admin,
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.roles.values()
            ],
            "user_roles": [
                {"user_id": ur.user_id, "role_id": ur.role_id} for ur in self.user_roles
            ],
            "permissions": [
                {
                    "id": p.id,
                    "module": p.module,
                    "action": p.action,
                    "description": p.description,
                }
                for p in self.permissions.values()
            ],
            "role_permissions": [
                {"role_id": rp.role_id, "permission_id": rp.permission_id, "value": rp.value}
                for rp in self.role_permissions.values()
            ],
            "user_permissions": [
                {"user_id": up.user_id, "permission_id": up.permission_id, "value": up.value}
                for up in self.user_permissions.values()
            ],
            "refresh_tokens": [
                {
                    "id": r.id,
                    "token": r.token,
                    "user_id": r.user_id,
                    "expires_at": self._serialize_datetime(r.expires_at),
                    "revoked": r.revoked,
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: UserCredential(
                user_id=c["user_id"],
                password_hash=c["password_hash"],
                password_algo=c.get("password_algo", ""),
                last_updated_at=self._deserialize_datetime(c.get("last_updated_at"))
                or utcnow(),
            )
            for c in data.get("credentials", [])
        }
        self.roles = {
            r["id"]: Role(
                id=r["id"],
                name=r["name"],
                description=r.get("description"),
                is_super_admin=r.get("is_super_admin", False),
                created_at=self._deserialize_datetime(r.get("created_at")) or utcnow(),
            )
            for r in data.get("roles", [])
        }
        self.user_roles = [
            UserRole(user_id=ur["user_id"], role_id=ur["role_id"])
            for ur in data.get("user_roles", [])
        ]
        self.permissions = {
            p["id"]: Permission(
                id=p["id"],
                module=p["module"],
                action=p["action"],
                description=p.get("description"),
            )
            for p in data.get("permissions", [])
        }
        self.role_permissions = {
            (rp["role_id"], rp["permission_id"]): RolePermission(**rp)
            for rp in data.get("role_permissions", [])
        }
        self.user_permissions = {
            (up["user_id"], up["permission_id"]): UserPermission(**up)
            for up in data.get("user_permissions", [])
        }
        self.refresh_tokens = {
            r["token"]: RefreshToken(
                id=r["id"],
                token=r["token"],
                user_id=r["user_id"],
                expires_at=self._deserialize_datetime(r["expires_at"]),
                revoked=r.get("revoked", False),
                created_at=self._deserialize_datetime(r.get("created_at")) or utcnow(),
            )
            for r in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "login": user.login,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "phone_number": user.phone_number,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "last_login": self._serialize_datetime(user.last_login),
            "last_activity": self._serialize_datetime(user.last_activity),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            login=data["login"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            email=data.get("email"),
            phone_number=data.get("phone_number"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login=self._deserialize_datetime(data.get("last_login")),
            last_activity=self._deserialize_datetime(data.get("last_activity")),
        )
