"""
API request and response models for TenantGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py,
tenants/models.py and audit/models.py, which own the internal domain
representation. Route handlers map between the two.

Field names on the login contract are camelCase on the wire
(twoFactorToken, challengeId, rememberDevice, requires2FA) via aliases;
everything else is snake_case.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    super_admin = "super_admin"
    company_admin = "company_admin"
    store_owner = "store_owner"
    manager = "manager"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    A second-factor submission re-sends email and password along with the
    code and the challengeId from the previous requires2FA response.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    two_factor_token: Optional[str] = Field(default=None, alias="twoFactorToken", max_length=32)
    challenge_id: Optional[str] = Field(default=None, alias="challengeId", max_length=128)
    remember_device: bool = Field(default=False, alias="rememberDevice")
    device_name: Optional[str] = Field(default=None, alias="deviceName", max_length=255)


class PasswordChange(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=72)


class PasswordReset(BaseModel):
    """Request body for POST /api/v1/auth/users/{id}/reset-password."""

    new_password: str = Field(min_length=8, max_length=72)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    role: RoleEnum
    company_id: Optional[int] = None
    store_id: Optional[int] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class UserPatch(BaseModel):
    """Partial update. company_id is only honoured for super_admin."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[RoleEnum] = None
    company_id: Optional[int] = None
    store_id: Optional[int] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Credential fields are never included."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    company_id: Optional[int] = None
    store_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool
    two_factor_enabled: bool
    created_at: str = ""
    last_login: Optional[str] = None


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Login successful"
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: str


class TwoFactorRequiredResponse(BaseModel):
    """Returned (200) when the password verified but a second factor is needed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    requires_2fa: bool = Field(default=True, alias="requires2FA")
    challenge_id: str = Field(alias="challengeId")
    message: str = "Two-factor authentication required"


class TrustedDeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    device_name: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: Optional[str]
    expires_at: str


class RevokedDevicesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


class TwoFactorSetupResponse(BaseModel):
    """Enrollment material. The secret is echoed back in verify-setup."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    manual_entry_key: str
    qr_code: str


class TwoFactorVerifySetup(BaseModel):
    secret: str = Field(min_length=16, max_length=64)
    token: str = Field(min_length=6, max_length=10)


class TwoFactorDisable(BaseModel):
    password: str = Field(min_length=1, max_length=128)


class TwoFactorCode(BaseModel):
    token: str = Field(min_length=6, max_length=10)


class BackupCodesResponse(BaseModel):
    """Raw backup codes. Shown exactly once."""

    model_config = ConfigDict(frozen=True)

    message: str
    backup_codes: list[str]


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class CompanyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=1000)
    contact_person: Optional[str] = Field(default=None, max_length=255)
    max_stores: int = Field(default=5, ge=1, le=1000)


class CompanyPatch(BaseModel):
    """Partial update. max_stores and is_active are only honoured for super_admin."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=1000)
    contact_person: Optional[str] = Field(default=None, max_length=255)
    max_stores: Optional[int] = Field(default=None, ge=1, le=1000)
    is_active: Optional[bool] = None


class CompanyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    phone: Optional[str]
    address: Optional[str]
    contact_person: Optional[str]
    max_stores: int
    is_active: bool
    created_at: Optional[str]


class StoreCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    address: Optional[str] = Field(default=None, max_length=1000)
    phone: Optional[str] = Field(default=None, max_length=50)


class StorePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    address: Optional[str] = Field(default=None, max_length=1000)
    phone: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class StoreResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    company_id: int
    name: str
    address: Optional[str]
    phone: Optional[str]
    is_active: bool
    created_at: Optional[str]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    entity_type: Optional[str]
    entity_id: Optional[str]
    user_id: Optional[int]
    user_email: Optional[str]
    user_role: Optional[str]
    company_id: Optional[int]
    store_id: Optional[int]
    ip_address: Optional[str]
    user_agent: Optional[str]
    description: str
    old_values: Optional[dict[str, Any]]
    new_values: Optional[dict[str, Any]]
    metadata: dict[str, Any]
    severity: str
    created_at: str


class AuditLogPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    limit: int
    offset: int
    entries: list[AuditLogResponse]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Error envelope returned on 4xx/5xx responses. message is always present."""

    model_config = ConfigDict(frozen=True)

    message: str
    code: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
