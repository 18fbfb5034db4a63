"""
Auth — トークンサービス

ステートレスな署名付きトークン (JWT, HS256)。

    header.payload.signature  (各セグメントは base64url)
    payload = {iat, exp, iss, data: {user_id, email, role}}

サーバー側にセッションや失効リストは持たない。トークンを持っていること
だけが認可の根拠で、ログアウトはクライアント側でトークンを捨てるだけ。
"""

import binascii
import json
import re
import time
from dataclasses import dataclass

import jwt
from jwt.utils import base64url_decode

from ..config import Settings
from ..errors import ErrorKind, Failure

_BEARER = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class Claims:
    user_id: str
    email: str
    role: str
    issued_at: int
    expires_at: int

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def bearer_token(authorization: str | None) -> str | None:
    """Authorization ヘッダから Bearer トークンを取り出す。"""
    if not authorization:
        return None
    match = _BEARER.match(authorization)
    return match.group(1) if match else None


def _segment_json(segment: str) -> dict | None:
    """base64url の JSON オブジェクトセグメントをデコードする。失敗なら None。"""
    try:
        value = json.loads(base64url_decode(segment))
    except (binascii.Error, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _auth_failure(code: str, message: str) -> Failure:
    return Failure(ErrorKind.AUTH, message, code=code)


class TokenService:
    def __init__(self, settings: Settings):
        self._secret = settings.token_secret
        self.algorithm = settings.token_algorithm
        self.expire_seconds = settings.token_expire_seconds
        self.issuer = settings.token_issuer
        self.refresh_window_seconds = settings.token_refresh_window_seconds

    def issue(self, user_id: str, email: str, role: str = "user", now: float | None = None) -> str:
        issued_at = int(time.time() if now is None else now)
        payload = {
            "iat": issued_at,
            "exp": issued_at + self.expire_seconds,
            "iss": self.issuer,
            "data": {"user_id": user_id, "email": email, "role": role},
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Claims | Failure:
        """
        トークンを検証してクレームを返す。

        失敗の細分類 (Failure.code):
          bad_format   : 3 セグメントでない / ヘッダがデコードできない
          bad_algorithm: ヘッダの alg が設定と違う
          bad_signature: 署名不一致 (定数時間比較)。ヘッダ以降のセグメントの改ざんはすべてここ
          expired      : 有効期限切れ
        """
        if token.count(".") != 2:
            return _auth_failure("bad_format", "Invalid token format")
        if _segment_json(token.split(".", 1)[0]) is None:
            return _auth_failure("bad_format", "Invalid token header")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": ["iat", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            return _auth_failure("expired", "Token expired")
        except jwt.InvalidAlgorithmError:
            return _auth_failure("bad_algorithm", "Invalid token algorithm")
        except jwt.InvalidSignatureError:
            return _auth_failure("bad_signature", "Invalid token signature")
        except jwt.DecodeError:
            return _auth_failure("bad_signature", "Invalid token signature")
        except jwt.InvalidTokenError as e:
            return _auth_failure("invalid", f"Invalid token: {e}")

        data = payload.get("data")
        if not isinstance(data, dict) or not {"user_id", "email", "role"} <= data.keys():
            return _auth_failure("bad_format", "Invalid token payload")
        return Claims(
            user_id=str(data["user_id"]),
            email=data["email"],
            role=data["role"],
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )

    def refresh(self, token: str, now: float | None = None) -> str | Failure:
        """
        有効なトークンから、同じクレームで iat/exp を新しくしたトークンを発行する。

        refresh_window_seconds が 0 なら期限前ならいつでも更新できる。
        正の値なら残り寿命がその秒数以下になるまで更新を拒否する。
        """
        claims = self.verify(token)
        if isinstance(claims, Failure):
            return claims

        current = time.time() if now is None else now
        if self.refresh_window_seconds > 0 and claims.expires_at - current > self.refresh_window_seconds:
            return _auth_failure("refresh_too_early", "Token is not yet eligible for refresh")
        return self.issue(claims.user_id, claims.email, claims.role, now=now)
