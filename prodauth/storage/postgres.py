from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from prodauth.logging import get_logger
from prodauth.storage.common import normalize_login, validate_permission_value
from prodauth.storage.errors import ConstraintViolation
from prodauth.storage.models import (
    Permission,
    PermissionGrant,
    RefreshToken,
    Role,
    User,
    new_id,
    utcnow,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        login TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        phone_number TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ,
        last_activity TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        is_super_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id UUID NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id UUID PRIMARY KEY,
        module TEXT NOT NULL,
        action TEXT NOT NULL,
        description TEXT,
        UNIQUE (module, action)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id UUID NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id UUID NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        value INTEGER NOT NULL CHECK (value >= 0),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_permission (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        permission_id UUID NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        value INTEGER NOT NULL CHECK (value >= 0),
        PRIMARY KEY (user_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    # token rows outlive their user; older schemas carried a cascading key
    "ALTER TABLE refresh_token DROP CONSTRAINT IF EXISTS refresh_token_user_id_fkey",
)


class PostgresStore:
    """Postgres-backed credential store.

    Row-level atomicity comes from the database: refresh consumption is a
    single conditional ``UPDATE ... RETURNING`` so two concurrent callers
    can never both see the same row as active.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("credential_schema_ready", statements=len(_SCHEMA_STATEMENTS))

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return None

    def _user_from_row(self, row) -> User:
        return User(
            id=str(row["id"]),
            login=row["login"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            email=row.get("email"),
            phone_number=row.get("phone_number"),
            is_active=row.get("is_active", True),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            last_login=self._parse_ts(row.get("last_login")),
            last_activity=self._parse_ts(row.get("last_activity")),
        )

    def _role_from_row(self, row) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            is_super_admin=bool(row.get("is_super_admin", False)),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _permission_from_row(row) -> Permission:
        return Permission(
            id=str(row["id"]),
            module=row["module"],
            action=row["action"],
            description=row.get("description"),
        )

    def _refresh_token_from_row(self, row) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=self._parse_ts(row["expires_at"]),
            revoked=bool(row.get("revoked", False)),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

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
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, login, first_name, last_name, email, phone_number, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, login, first_name, last_name, email, phone_number, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("login already exists", {"field": "login"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_login(self, login: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE login = %s", ((login or "").strip(),)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def touch_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s", (at, user_id)
            )

    def touch_last_activity(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_activity = %s WHERE id = %s", (at, user_id)
            )

    # roles
    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_super_admin: bool = False,
        grants: Optional[Dict[str, int]] = None,
    ) -> Role:
        name = (name or "").strip()
        if not name:
            raise ConstraintViolation("role name must not be empty", {"field": "name"})
        for value in (grants or {}).values():
            validate_permission_value(value)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, name, description, is_super_admin)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, description, is_super_admin),
                ).fetchone()
                self._insert_grants(conn, row["id"], grants or {})
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("permission does not exist", {"field": "permissions"})
        return self._role_from_row(row)

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        grants: Optional[Dict[str, int]] = None,
    ) -> Optional[Role]:
        if name is not None:
            name = name.strip()
            if not name:
                raise ConstraintViolation("role name must not be empty", {"field": "name"})
        for value in (grants or {}).values():
            validate_permission_value(value)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE role SET name = COALESCE(%s, name),
                        description = COALESCE(%s, description)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, role_id),
                ).fetchone()
                if row is None:
                    return None
                if grants is not None:
                    conn.execute(
                        "DELETE FROM role_permission WHERE role_id = %s", (role_id,)
                    )
                    self._insert_grants(conn, role_id, grants)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("permission does not exist", {"field": "permissions"})
        return self._role_from_row(row)

    @staticmethod
    def _insert_grants(conn, role_id: str, grants: Dict[str, int]) -> None:
        for permission_id, value in grants.items():
            conn.execute(
                """
                INSERT INTO role_permission (role_id, permission_id, value)
                VALUES (%s, %s, %s)
                """,
                (role_id, permission_id, value),
            )

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            # the row lock blocks concurrent assignments until the delete commits
            locked = conn.execute(
                "SELECT id FROM role WHERE id = %s FOR UPDATE", (role_id,)
            ).fetchone()
            if locked is None:
                return False
            assigned = conn.execute(
                "SELECT count(*) AS n FROM user_role WHERE role_id = %s", (role_id,)
            ).fetchone()["n"]
            if assigned:
                raise ConstraintViolation(
                    "role is assigned to users",
                    {"role_id": role_id, "user_count": int(assigned)},
                )
            conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
        return True

    def count_role_users(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM user_role WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["n"])

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [self._role_from_row(row) for row in rows]

    def assign_role(self, user_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (user_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role_id": role_id}
            )

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return result.rowcount > 0

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_role ur JOIN role r ON r.id = ur.role_id
                WHERE ur.user_id = %s ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    # permissions
    def create_permission(
        self, module: str, action: str, description: Optional[str] = None
    ) -> Permission:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO permission (id, module, action, description)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (module, action) DO UPDATE
                SET description = COALESCE(EXCLUDED.description, permission.description)
                RETURNING *
                """,
                (new_id(), module, action, description),
            ).fetchone()
        return self._permission_from_row(row)

    def get_permission(self, module: str, action: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE module = %s AND action = %s",
                (module, action),
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY module, action"
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def set_role_permission(self, role_id: str, permission_id: str, value: int) -> None:
        validate_permission_value(value)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id, value)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (role_id, permission_id) DO UPDATE SET value = EXCLUDED.value
                    """,
                    (role_id, permission_id, value),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return result.rowcount > 0

    def list_role_permissions(self, role_id: str) -> List[PermissionGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.module, p.action, rp.value
                FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = %s
                """,
                (role_id,),
            ).fetchall()
        return [
            PermissionGrant(module=row["module"], action=row["action"], value=int(row["value"]))
            for row in rows
        ]

    def list_role_grants(self, user_id: str) -> List[PermissionGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.module, p.action, rp.value
                FROM user_role ur
                JOIN role_permission rp ON rp.role_id = ur.role_id
                JOIN permission p ON p.id = rp.permission_id
                WHERE ur.user_id = %s
                """,
                (user_id,),
            ).fetchall()
        return [
            PermissionGrant(module=row["module"], action=row["action"], value=int(row["value"]))
            for row in rows
        ]

    def set_user_permission(self, user_id: str, permission_id: str, value: int) -> None:
        validate_permission_value(value)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_permission (user_id, permission_id, value)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, permission_id) DO UPDATE SET value = EXCLUDED.value
                    """,
                    (user_id, permission_id, value),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or permission does not exist",
                {"user_id": user_id, "permission_id": permission_id},
            )

    def remove_user_permission(self, user_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_permission WHERE user_id = %s AND permission_id = %s",
                (user_id, permission_id),
            )
            return result.rowcount > 0

    def list_user_overrides(self, user_id: str) -> List[PermissionGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.module, p.action, up.value
                FROM user_permission up
                JOIN permission p ON p.id = up.permission_id
                WHERE up.user_id = %s
                """,
                (user_id,),
            ).fetchall()
        return [
            PermissionGrant(module=row["module"], action=row["action"], value=int(row["value"]))
            for row in rows
        ]

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        """Store ``token`` for ``user_id``; a retried insert returns the existing row."""
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO refresh_token (id, token, user_id, expires_at)
                SELECT %s, %s, id, %s FROM app_user WHERE id = %s
                ON CONFLICT (token) DO NOTHING
                RETURNING *
                """,
                (new_id(), token, expires_at, user_id),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM refresh_token WHERE token = %s", (token,)
                ).fetchone()
        if row is None:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._refresh_token_from_row(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def consume_refresh_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE token = %s AND user_id = %s AND revoked = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, user_id, now),
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def revoke_refresh_tokens(self, token: str, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE token = %s AND user_id = %s AND revoked = FALSE
                """,
                (token, user_id),
            )
            return result.rowcount

