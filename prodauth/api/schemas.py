from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Maximum lengths for credential fields to bound argon2 work per request
MAX_LOGIN_LENGTH = 150
MAX_PASSWORD_LENGTH = 1024
MAX_ROLE_NAME_LENGTH = 100

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "validation_error",
    "server_error",
}


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Models exchanged with the web client using camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=MAX_LOGIN_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class UserProfileResponse(CamelModel):
    id: str
    login: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class LoginResponse(CamelModel):
    user: UserProfileResponse
    access_token: str


class AccessTokenResponse(CamelModel):
    access_token: str


class MessageResponse(CamelModel):
    message: str


class RoleSummaryResponse(CamelModel):
    id: str
    name: str


class UserDetailsResponse(CamelModel):
    id: str
    login: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool
    last_login: Optional[datetime] = None
    roles: List[RoleSummaryResponse] = Field(default_factory=list)
    permissions: Dict[str, int] = Field(default_factory=dict)
    permissions_by_module: Dict[str, Dict[str, int]] = Field(default_factory=dict)


class PermissionResponse(CamelModel):
    id: str
    module: str
    action: str
    description: Optional[str] = None


class PermissionCatalogResponse(CamelModel):
    permissions: List[PermissionResponse]
    grouped_by_module: Dict[str, List[PermissionResponse]]


def _check_levels(value: Dict[str, Optional[int]]) -> Dict[str, Optional[int]]:
    for key, level in value.items():
        module, sep, action = key.partition(".")
        if not sep or not module or not action:
            raise ValueError(f"permission key {key!r} must look like 'module.action'")
        if level is not None and level < 0:
            raise ValueError(f"permission level for {key!r} must be non-negative")
    return value


class PermissionLevelsRequest(BaseModel):
    """``{"permissions": {"module.action": level}}``; ``None`` removes a user override."""

    permissions: Dict[str, Optional[int]]

    @field_validator("permissions")
    @classmethod
    def _validate_levels(cls, value: Dict[str, Optional[int]]) -> Dict[str, Optional[int]]:
        return _check_levels(value)


class PermissionLevelsResponse(CamelModel):
    permissions: Dict[str, int]


class AssignRoleRequest(CamelModel):
    role_id: UUID


class UserRolesResponse(CamelModel):
    user_id: str
    roles: List[RoleSummaryResponse]


class UserStatusRequest(CamelModel):
    is_active: bool


class UserStatusResponse(CamelModel):
    id: str
    login: str
    is_active: bool


class CreateRoleRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=MAX_ROLE_NAME_LENGTH)
    description: Optional[str] = None
    permissions: Dict[str, int] = Field(default_factory=dict)

    @field_validator("permissions")
    @classmethod
    def _validate_levels(cls, value: Dict[str, int]) -> Dict[str, int]:
        return _check_levels(value)


class UpdateRoleRequest(CamelModel):
    """Omitted fields stay as they are; ``permissions`` replaces the whole grant set."""

    name: Optional[str] = Field(None, min_length=1, max_length=MAX_ROLE_NAME_LENGTH)
    description: Optional[str] = None
    permissions: Optional[Dict[str, int]] = None

    @field_validator("permissions")
    @classmethod
    def _validate_levels(cls, value: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        return value if value is None else _check_levels(value)


class RoleResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    permissions: Dict[str, int] = Field(default_factory=dict)
    user_count: int = 0


class PaginationResponse(CamelModel):
    total: int
    page: int
    limit: int
    pages: int


class RoleListResponse(CamelModel):
    roles: List[RoleResponse]
    pagination: PaginationResponse
