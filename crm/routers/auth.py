import logging
from typing import Optional

from fastapi import APIRouter, Depends, status

from crm.auth import AuthService, get_auth_service, get_bearer_token, get_current_user
from crm.config import get_settings
from crm.errors import unwrap
from crm.schemas import (
    AuthResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    PublicUser,
    RegisterRequest,
    ResetPasswordRequest,
    SuccessResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, auth: AuthService = Depends(get_auth_service)) -> AuthResponse:
    user, token = unwrap(auth.register(body.name, body.username, body.email, body.password))
    return AuthResponse(user=user, token=token)


@router.post("/login", response_model=AuthResponse)
async def login(body: LoginRequest, auth: AuthService = Depends(get_auth_service)) -> AuthResponse:
    user, token = unwrap(auth.login(body.email, body.password))
    return AuthResponse(user=user, token=token)


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    token: Optional[str] = Depends(get_bearer_token),
    auth: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """Drop the caller's session. Unknown or missing tokens still succeed."""
    if token:
        auth.logout(token)
    return SuccessResponse(success=True)


@router.get("/me", response_model=PublicUser)
async def me(user: PublicUser = Depends(get_current_user)) -> PublicUser:
    return user


@router.post("/forgot-password", response_model=ForgotPasswordResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ForgotPasswordResponse:
    reset_token = unwrap(auth.request_password_reset(body.email))
    # Reset links are not e-mailed; the token is only handed back when RETURN_RESET_TOKEN is set
    return ForgotPasswordResponse(
        message="Password reset requested",
        reset_token=reset_token if get_settings().RETURN_RESET_TOKEN else None,
    )


@router.post("/reset-password", response_model=SuccessResponse)
async def reset_password(
    body: ResetPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    unwrap(auth.reset_password(body.token, body.password))
    return SuccessResponse(success=True)
