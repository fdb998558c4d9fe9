from __future__ import annotations

from typing import Optional

from prodauth.config import PermissionSource
from prodauth.logging import get_logger
from prodauth.service.errors import Forbidden, InvalidToken, Unauthenticated
from prodauth.service.permissions import PermissionResolver
from prodauth.service.tokens import AccessClaims, TokenCodec

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthorizationGate:
    """Per-request authentication and permission checks.

    With ``PermissionSource.SNAPSHOT`` the levels embedded in the access
    token are trusted until it expires. ``PermissionSource.LIVE`` re-reads
    them (and super-admin status) from the store on every check.
    """

    def __init__(
        self,
        codec: TokenCodec,
        resolver: PermissionResolver,
        *,
        permission_source: PermissionSource = PermissionSource.SNAPSHOT,
    ) -> None:
        self.codec = codec
        self.resolver = resolver
        self.permission_source = PermissionSource(permission_source)

    def authenticate(self, token: Optional[str]) -> AccessClaims:
        if not token:
            raise Unauthenticated(reason="missing")
        try:
            return self.codec.verify_access(token)
        except InvalidToken as exc:
            raise Unauthenticated(reason=exc.reason) from exc

    def authorize(
        self, claims: AccessClaims, module: str, action: str, minimum_level: int = 1
    ) -> None:
        if self.permission_source is PermissionSource.LIVE:
            super_admin = self.resolver.is_super_admin(claims.user_id)
            actual = self.resolver.resolve(claims.user_id).get(f"{module}.{action}", 0)
        else:
            super_admin = claims.super_admin
            actual = claims.level(module, action)
        if super_admin:
            return
        if actual < minimum_level:
            logger.warning(
                "permission_denied",
                user_id=claims.user_id,
                permission=f"{module}.{action}",
                required=minimum_level,
                actual=actual,
            )
            raise Forbidden(module, action, minimum_level, actual)

    extract_bearer = staticmethod(extract_bearer)
