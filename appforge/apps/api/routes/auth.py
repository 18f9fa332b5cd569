from __future__ import annotations

from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import AnyUrl, BaseModel, ConfigDict, EmailStr, Field, UrlConstraints
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.apps.api.deps import get_db, get_tenant_id, require_caller
from appforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from appforge.apps.api.rate_limit import PRESET_AUTH, rate_limited
from appforge.apps.api.response import SuccessEnvelope, success_response
from appforge.core.config import get_settings
from appforge.services import identity
from appforge.services.access_policy import Caller


router = APIRouter(
    prefix="/auth",
    tags=["auth"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(rate_limited(PRESET_AUTH))],
)


class UserResponse(BaseModel):
    id: str
    email: str
    display_name: str | None = None
    avatar_url: str | None = None
    role: str
    profile_data: dict[str, Any] = Field(default_factory=dict)
    banned: bool = False
    banned_at: str | None = None
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class SessionResponse(BaseModel):
    user: UserResponse
    token: str


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(max_length=256)
    display_name: str | None = Field(default=None, max_length=128)
    # Self-signup may pick user or editor; admin is only granted to the first identity.
    role: Literal["user", "editor"] | None = None


class SigninRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(max_length=256)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    display_name: str | None = Field(default=None, max_length=128)
    avatar_url: Annotated[AnyUrl, UrlConstraints(max_length=2048)] | None = None
    profile_data: dict[str, Any] | None = None


class ResetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(max_length=256)


@router.post("/signup", status_code=201, response_model=SuccessEnvelope[SessionResponse])
async def signup(
    request: Request,
    payload: SignupRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await identity.signup(
        db,
        tenant_id=tenant_id,
        email=payload.email,
        password=payload.password,
        display_name=payload.display_name,
        role=payload.role,
    )
    return success_response(request=request, data=result)


@router.post("/signin", response_model=SuccessEnvelope[SessionResponse])
async def signin(
    request: Request,
    payload: SigninRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await identity.signin(
        db, tenant_id=tenant_id, email=payload.email, password=payload.password
    )
    return success_response(request=request, data=result)


@router.post("/signout")
async def signout(request: Request, tenant_id: str = Depends(get_tenant_id)) -> dict:
    # Tokens are stateless; clients drop them. Kept for SDK symmetry.
    return success_response(request=request, data={"signed_out": True})


@router.get("/me", response_model=SuccessEnvelope[UserResponse])
async def me(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity.get_user(db, tenant_id=tenant_id, user_id=caller.identity_id)
    return success_response(request=request, data=user)


@router.patch("/me", response_model=SuccessEnvelope[UserResponse])
async def update_me(
    request: Request,
    payload: ProfileUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity.update_profile(
        db,
        tenant_id=tenant_id,
        user_id=caller.identity_id,
        display_name=payload.display_name,
        avatar_url=str(payload.avatar_url) if payload.avatar_url is not None else None,
        profile_data=payload.profile_data,
    )
    return success_response(request=request, data=user)


@router.post("/reset-request")
async def reset_request(
    request: Request,
    payload: ResetRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    raw_token = await identity.request_password_reset(db, tenant_id=tenant_id, email=payload.email)
    data: dict[str, Any] = {
        "message": "If an account exists for this email, a reset link has been sent",
    }
    # Dev-only echo; production delivers the token out of band.
    if raw_token is not None and get_settings().auth_expose_reset_token:
        data["reset_token"] = raw_token
    return success_response(request=request, data=data)


@router.post("/reset")
async def reset_password(
    request: Request,
    payload: ResetPasswordRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity.reset_password(
        db, tenant_id=tenant_id, token=payload.token, new_password=payload.new_password
    )
    return success_response(request=request, data={"reset": True})
