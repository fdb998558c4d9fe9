from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from prodauth.logging import get_logger
from prodauth.service.errors import (
    InvalidCredentials,
    InvalidToken,
    RevokedOrExpired,
    UserNotFound,
)
from prodauth.service.permissions import PermissionResolver
from prodauth.service.tokens import TokenCodec
from prodauth.storage.common import CredentialStore
from prodauth.storage.models import (
    RoleSummary,
    User,
    UserDetails,
    UserProfile,
    utcnow,
)

PASSWORD_ALGO = "argon2id"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class LoginResult:
    user: UserProfile
    access_token: str
    refresh_token: str


class SessionManager:
    """Login, refresh rotation and logout on top of the credential store.

    Refresh tokens are single use: ``refresh`` consumes the presented row
    with one conditional write before minting the replacement, so a replayed
    or concurrently reused token is rejected.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        resolver: Optional[PermissionResolver] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.resolver = resolver or PermissionResolver(store)
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against for unknown logins so the miss costs a full argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return self._clock()

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _check_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def verify_password(self, user: Optional[User], password: str) -> bool:
        record = self.store.get_password_record(user.id) if user else None
        if not record:
            self._check_password(self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            self._check_password(self._dummy_hash, password)
            return False
        return self._check_password(stored_hash, password)

    def _issue_pair(self, user: User) -> TokenPair:
        permissions = self.resolver.resolve(user.id)
        roles = self.store.list_user_roles(user.id)
        access_token = self.codec.issue_access_token(
            user.id,
            [role.id for role in roles],
            permissions,
            super_admin=any(role.is_super_admin for role in roles),
        )
        refresh_token, token_id = self.codec.issue_refresh_token(user.id)
        self.store.create_refresh_token(
            user.id, refresh_token, self._now() + self.codec.refresh_ttl
        )
        self.logger.debug("refresh_token_stored", user_id=user.id, token_id=token_id)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    async def login(self, login: str, password: str) -> LoginResult:
        user = self.store.get_user_by_login(login)
        password_ok = self.verify_password(user, password)
        if not user or not user.is_active or not password_ok:
            self.logger.warning(
                "login_failed",
                user_id=user.id if user else None,
                inactive=bool(user and not user.is_active),
            )
            raise InvalidCredentials()

        pair = self._issue_pair(user)
        self.store.touch_last_login(user.id, self._now())
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=UserProfile.from_user(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.codec.verify_refresh(refresh_token)
        consumed = self.store.consume_refresh_token(
            refresh_token, claims.user_id, self._now()
        )
        if consumed is None:
            self.logger.warning(
                "refresh_token_reuse_rejected",
                user_id=claims.user_id,
                token_id=claims.token_id,
            )
            raise RevokedOrExpired()

        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            # the old row stays consumed; nothing new is minted
            self.logger.warning(
                "refresh_user_unavailable",
                user_id=claims.user_id,
                missing=user is None,
            )
            raise RevokedOrExpired()

        pair = self._issue_pair(user)
        self.store.touch_last_activity(user.id, self._now())
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return pair

    async def logout(self, refresh_token: str) -> bool:
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except InvalidToken as exc:
            self.logger.info("logout_token_invalid", reason=exc.reason)
            return False
        revoked = self.store.revoke_refresh_tokens(refresh_token, claims.user_id)
        self.store.touch_last_activity(claims.user_id, self._now())
        self.logger.info("logout_completed", user_id=claims.user_id, revoked=revoked)
        return True

    async def get_user_details(self, user_id: str) -> UserDetails:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFound(user_id)
        roles = self.store.list_user_roles(user_id)
        return UserDetails(
            id=user.id,
            login=user.login,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            phone_number=user.phone_number,
            is_active=user.is_active,
            last_login=user.last_login,
            roles=[RoleSummary(id=role.id, name=role.name) for role in roles],
            permissions=self.resolver.resolve(user_id),
        )
