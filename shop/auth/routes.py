"""
Auth — HTTP エンドポイント

登録・ログイン・外部 ID プロバイダのサインインでトークンを発行する。ログアウトはサーバー側では
何もしない (トークンはステートレス)。
"""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import current_claims, get_session
from ..errors import ErrorKind, Failure, unwrap
from ..schemas import IdentitySignInRequest, LoginRequest, RegisterRequest
from . import users
from .tokens import Claims, bearer_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _token_response(request: Request, user: users.User) -> dict:
    tokens = request.app.state.tokens
    return {
        "token": tokens.issue(user.id, user.email, user.role),
        "token_type": "Bearer",
        "expires_in": tokens.expire_seconds,
        "user": user.model_dump(exclude={"is_active", "oauth_provider"}),
    }


@router.post("/register", status_code=201)
async def register(
    req: RegisterRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    user = unwrap(
        await users.register(
            session,
            username=req.username,
            email=req.email,
            password=req.password,
            full_name=req.full_name,
            phone=req.phone,
            rounds=request.app.state.settings.password_hash_rounds,
        )
    )
    return _token_response(request, user)


@router.post("/login")
async def login(
    req: LoginRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    user = unwrap(await users.authenticate(session, req.email, req.password))
    logger.info("User %s logged in", user.id)
    return _token_response(request, user)


@router.post("/identity/{provider}")
async def identity_sign_in(
    provider: Literal["google", "facebook"],
    req: IdentitySignInRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """外部 ID プロバイダのサインイン。初回は利用者を作成して紐付ける。"""
    user = unwrap(
        await users.sign_in_with_identity(
            session,
            provider,
            users.Identity(external_id=req.external_id, email=req.email, name=req.name),
            rounds=request.app.state.settings.password_hash_rounds,
        )
    )
    logger.info("User %s signed in with %s", user.id, provider)
    return _token_response(request, user)


@router.post("/refresh")
async def refresh(request: Request, authorization: str | None = Header(default=None)):
    """有効なトークンを新しい iat/exp で再発行する。"""
    token = bearer_token(authorization)
    if token is None:
        unwrap(Failure(ErrorKind.AUTH, "Access token is required", code="missing_token"))
    tokens = request.app.state.tokens
    return {
        "token": unwrap(tokens.refresh(token)),
        "token_type": "Bearer",
        "expires_in": tokens.expire_seconds,
    }


@router.post("/logout")
async def logout(claims: Claims = Depends(current_claims)):
    return {"message": "Logout successful"}


@router.get("/me")
async def me(
    claims: Claims = Depends(current_claims),
    session: AsyncSession = Depends(get_session),
):
    user = await users.get_user(session, claims.user_id)
    return unwrap(user or Failure(ErrorKind.NOT_FOUND, "User not found"))
