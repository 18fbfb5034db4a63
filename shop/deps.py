"""
Shop Service — FastAPI 依存関係

app.state に載せたサービスをルートに渡す。
"""

from fastapi import Depends, Header, HTTPException, Request

from .auth.tokens import Claims, bearer_token
from .errors import unwrap


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


def current_claims(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Claims:
    """Authorization: Bearer <token> を検証してクレームを返す。"""
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "missing_token", "message": "Access token is required"},
        )
    return unwrap(request.app.state.tokens.verify(token))


def require_admin(claims: Claims = Depends(current_claims)) -> Claims:
    if not claims.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Administrator role required"},
        )
    return claims
