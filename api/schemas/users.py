"""Pydantic schemas for the user endpoints.

Wire names are camelCase (``userId``, ``accessToken``) to match existing
clients; Python attributes stay snake_case.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)
    name: str = Field(..., min_length=1, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)


class UpdateUserRequest(_CamelModel):
    user_id: int = Field(..., alias="userId")
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, min_length=3, max_length=255)


class ChangePasswordRequest(_CamelModel):
    user_id: int = Field(..., alias="userId")
    old_password: str = Field(..., alias="oldPassword", min_length=1, max_length=256)
    new_password: str = Field(..., alias="newPassword", min_length=1, max_length=256)


class MessageResponse(BaseModel):
    message: str


class SignupResponse(_CamelModel):
    message: str
    user_id: int = Field(..., alias="userId")


class LoginResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")
    user_id: int = Field(..., alias="userId")
    name: str


class ProfileResponse(BaseModel):
    """Public profile, as served from the cache or the store."""

    id: int
    name: str
    email: str


class ErrorResponse(BaseModel):
    detail: str
    category: str
