from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from prodauth.config import Settings
from prodauth.logging import get_logger
from prodauth.service.errors import InvalidToken
from prodauth.storage.models import utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]


@dataclass
class AccessClaims:
    user_id: str
    role_ids: List[str]
    permissions: Dict[str, int]
    token_id: str
    issued_at: datetime
    expires_at: datetime
    super_admin: bool = False

    def level(self, module: str, action: str) -> int:
        return int(self.permissions.get(f"{module}.{action}", 0))


@dataclass
class RefreshClaims:
    user_id: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class _Keys:
    secret: str
    token_type: str
    ttl: timedelta = field(default_factory=timedelta)


class TokenCodec:
    """Issues and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with distinct secrets; a token
    presented to the wrong verifier fails signature validation and is
    reported as malformed. The header algorithm is pinned to HS256.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._access = _Keys(
            secret=settings.access_token_secret,
            token_type="access",
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        )
        self._refresh = _Keys(
            secret=settings.refresh_token_secret,
            token_type="refresh",
            ttl=timedelta(days=settings.refresh_token_ttl_days),
        )

    @property
    def refresh_ttl(self) -> timedelta:
        return self._refresh.ttl

    def _now(self) -> datetime:
        return self._clock()

    def issue_access_token(
        self,
        user_id: str,
        role_ids: List[str],
        permissions: Dict[str, int],
        *,
        super_admin: bool = False,
    ) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user_id,
            "roles": list(role_ids),
            "permissions": dict(permissions),
            "sa": bool(super_admin),
            "token_type": self._access.token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._access.ttl).timestamp()),
        }
        return self._encode_jwt(payload, self._access.secret)

    def issue_refresh_token(self, user_id: str) -> Tuple[str, str]:
        """Return ``(token, token_id)``; the random id keeps every token string unique."""

        now = self._now()
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user_id,
            "token_type": self._refresh.token_type,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int((now + self._refresh.ttl).timestamp()),
        }
        return self._encode_jwt(payload, self._refresh.secret), token_id

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._verify(token, self._access)
        permissions = payload.get("permissions") or {}
        roles = payload.get("roles") or []
        if not isinstance(permissions, dict) or not isinstance(roles, list):
            raise InvalidToken(InvalidToken.MALFORMED)
        try:
            normalized = {str(k): int(v) for k, v in permissions.items()}
        except (TypeError, ValueError):
            raise InvalidToken(InvalidToken.MALFORMED)
        return AccessClaims(
            user_id=str(payload["sub"]),
            role_ids=[str(r) for r in roles],
            permissions=normalized,
            token_id=str(payload.get("jti", "")),
            issued_at=self._from_ts(payload.get("iat", payload["exp"])),
            expires_at=self._from_ts(payload["exp"]),
            super_admin=bool(payload.get("sa", False)),
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._verify(token, self._refresh)
        if not payload.get("jti"):
            raise InvalidToken(InvalidToken.MALFORMED)
        return RefreshClaims(
            user_id=str(payload["sub"]),
            token_id=str(payload["jti"]),
            issued_at=self._from_ts(payload.get("iat", payload["exp"])),
            expires_at=self._from_ts(payload["exp"]),
        )

    def _verify(self, token: str, keys: _Keys) -> dict[str, Any]:
        payload = self._decode_jwt(token, keys.secret)
        if payload is None:
            raise InvalidToken(InvalidToken.MALFORMED)
        if payload.get("token_type") != keys.token_type:
            logger.warning("jwt_token_type_mismatch", expected=keys.token_type)
            raise InvalidToken(InvalidToken.MALFORMED)
        if payload.get("iss") != self.settings.jwt_issuer or not payload.get("sub"):
            raise InvalidToken(InvalidToken.MALFORMED)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken(InvalidToken.MALFORMED)
        # a token whose expiry equals "now" is already expired
        if exp_ts <= self._now().timestamp():
            raise InvalidToken(InvalidToken.EXPIRED)
        return payload

    @staticmethod
    def _from_ts(value: Any) -> datetime:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload
