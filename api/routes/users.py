"""User account endpoints: signup, login, profile update, password change, profile read.

Handlers are plain ``def`` so FastAPI runs them on its thread pool; the
store, retry sleeps and breaker deadline all block only that worker.
Failures are raised as exceptions and turned into responses by the handlers
registered in ``api.main``.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from api.deps import get_user_service
from api.schemas.users import (
    ChangePasswordRequest,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    SignupRequest,
    SignupResponse,
    UpdateUserRequest,
)
from core.users.service import UserService

logger = logging.getLogger(__name__)

# Documented error bodies; 422 stays with FastAPI's own validation schema.
ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status: {"model": ErrorResponse} for status in (400, 404, 409, 500, 503, 504)
}

router = APIRouter(tags=["users"], responses=ERROR_RESPONSES)

Users = Annotated[UserService, Depends(get_user_service)]


@router.post("/signup", response_model=SignupResponse, status_code=201)
def signup(body: SignupRequest, users: Users) -> SignupResponse:
    """Register a new user."""
    user_id = users.signup(email=body.email, password=body.password, name=body.name)
    return SignupResponse(message="User created", user_id=user_id)


@router.post("/login", response_model=LoginResponse)
def login(body: LoginRequest, users: Users) -> LoginResponse:
    """Check credentials and return an access token."""
    result = users.login(email=body.email, password=body.password)
    return LoginResponse(access_token=result.access_token, user_id=result.user_id, name=result.name)


@router.post("/update", response_model=MessageResponse)
def update_user(body: UpdateUserRequest, users: Users) -> MessageResponse:
    """Update name and/or email. Invalidates the cached profile."""
    users.update_profile(body.user_id, name=body.name, email=body.email)
    return MessageResponse(message="User updated")


@router.post("/change-password", response_model=MessageResponse)
def change_password(body: ChangePasswordRequest, users: Users) -> MessageResponse:
    """Replace the password after verifying the old one."""
    users.change_password(
        body.user_id, old_password=body.old_password, new_password=body.new_password
    )
    return MessageResponse(message="Password changed")


# NOTE: keep this route last; the int convertor stops it from shadowing
# literal paths such as /health.
@router.get("/{user_id:int}", response_model=ProfileResponse)
def get_user(user_id: int, users: Users) -> ProfileResponse:
    """Fetch a profile, served read-through from the cache."""
    return ProfileResponse(**users.get_profile(user_id))
