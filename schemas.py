"""
Database and API schemas.

The stored ``User`` document lives in the ``users`` collection. Everything
that crosses the wire is a ``CamelModel`` so JSON keys come out camelCased
(``allUsers``, ``requiresTwoFactor``) while Python code keeps snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class EventType(str, Enum):
    INITIAL_DATA = "INITIAL_DATA"
    ENTRY_ADDED = "ENTRY_ADDED"
    ENTRY_UPDATED = "ENTRY_UPDATED"
    ENTRY_DELETED = "ENTRY_DELETED"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    id: int = Field(..., alias="_id", description="Integer identity")
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Unique email address")
    role: Role = Field(Role.USER, description="Registry role")
    password_hash: Optional[str] = Field(None, description="BCrypt password hash")
    mfa_secret: Optional[str] = Field(None, description="Base32 TOTP secret, present iff MFA enabled")
    avatar: Optional[str] = Field(None, description="Avatar reference")
    created_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_secret)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Directory entries

class UserPublic(CamelModel):
    """Public view of a registry entry; never carries secrets."""
    id: int
    name: str
    email: EmailStr
    role: Role
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            avatar=user.avatar,
            created_at=user.created_at,
        )


class UserCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    role: Role = Role.USER
    avatar: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class UserUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    avatar: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class UserQuery(BaseModel):
    """Filtering, sorting and paging for directory reads."""
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[Role] = None
    sort: Optional[str] = None
    order: Optional[str] = None
    limit: int = Field(10, ge=0)
    offset: int = Field(0, ge=0)


class CountResponse(BaseModel):
    count: int


# Auth

class RegisterRequest(UserCreate):
    password: str = Field(..., min_length=1)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class ProfileResponse(CamelModel):
    id: int
    email: EmailStr
    name: str
    role: Role


class MeResponse(ProfileResponse):
    avatar: Optional[str] = None
    two_factor_enabled: bool = False


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"


class LoginResponse(CamelModel):
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    user: Optional[ProfileResponse] = None
    requires_two_factor: bool = False
    temp_token: Optional[str] = None


class VerifySecondFactorRequest(CamelModel):
    code: str = Field(..., min_length=6, max_length=8)


class EnrollmentResponse(CamelModel):
    secret: str
    qr_code: str
    provisioning_uri: str


# Monitoring

class MonitoringFlag(CamelModel):
    actor_id: int
    reason: str
    detected_at: datetime


# Live sync

class Envelope(CamelModel):
    type: str
    data: Optional[Dict[str, Any]] = None
    all_users: List[UserPublic] = Field(default_factory=list)
