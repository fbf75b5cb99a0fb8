from __future__ import annotations

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from crm_api.auth.resolver import get_current_user
from crm_api.auth.schemas import (
    ApplicationUser,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
)
from crm_api.auth.service import AuthService
from crm_api.core.database import get_db
from crm_api.identity import IdentityClient, get_identity_client

router = APIRouter(prefix="/api/auth", tags=["auth"])
service = AuthService()


@router.post(
    "/register",
    response_model=RegisterResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
)
def register(
    dto: RegisterRequest,
    db: Session = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
) -> RegisterResponse:
    return service.register(db, identity, dto)


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
def login(
    dto: LoginRequest,
    db: Session = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
) -> LoginResponse:
    return service.login(db, identity, dto)


@router.post("/logout", response_model=MessageResponse)
def logout(
    authorization: str | None = Header(default=None),
    identity: IdentityClient = Depends(get_identity_client),
) -> MessageResponse:
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer ") :].strip() or None
    return service.logout(identity, token)


@router.post("/refresh", response_model=RefreshResponse, response_model_exclude_none=True)
def refresh(
    dto: RefreshRequest,
    identity: IdentityClient = Depends(get_identity_client),
) -> RefreshResponse:
    return service.refresh(identity, dto.refresh_token)


@router.get("/me", response_model=ApplicationUser)
def me(user: ApplicationUser = Depends(get_current_user)) -> ApplicationUser:
    return user
