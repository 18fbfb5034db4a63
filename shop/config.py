"""
Shop Service — 設定

環境変数は起動時に一度だけ読み込み、不変の Settings として
各コンポーネントのコンストラクタへ明示的に渡す。
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, field_validator

SUPPORTED_TOKEN_ALGORITHM = "HS256"


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str
    redis_url: str = "redis://localhost:6379"

    token_secret: str
    token_algorithm: str = SUPPORTED_TOKEN_ALGORITHM
    token_expire_seconds: int = 3600
    token_issuer: str = "shop-api"
    token_refresh_window_seconds: int = 0
    password_hash_rounds: int = 12

    gateway_server_key: str = ""
    gateway_is_production: bool = False
    gateway_timeout_seconds: float = 30.0

    ratelimit_enabled: bool = False
    ratelimit_requests: int = 60
    ratelimit_period: int = 60

    log_level: str = "INFO"

    @field_validator("token_algorithm")
    @classmethod
    def _only_hs256(cls, value: str) -> str:
        if value != SUPPORTED_TOKEN_ALGORITHM:
            raise ValueError(f"Unsupported algorithm: {value}")
        return value

    @field_validator("token_secret")
    @classmethod
    def _secret_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("JWT_SECRET must not be empty")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """環境変数から Settings を構築する。必須キーが無ければ KeyError。"""
        env = os.environ if environ is None else environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            token_secret=env["JWT_SECRET"],
            token_algorithm=env.get("JWT_ALGORITHM", SUPPORTED_TOKEN_ALGORITHM),
            token_expire_seconds=int(env.get("JWT_EXPIRE", "3600")),
            token_issuer=env.get("JWT_ISSUER", "shop-api"),
            token_refresh_window_seconds=int(env.get("JWT_REFRESH_WINDOW", "0")),
            password_hash_rounds=int(env.get("PASSWORD_HASH_ROUNDS", "12")),
            gateway_server_key=env.get("MIDTRANS_SERVER_KEY", ""),
            gateway_is_production=_flag(env.get("MIDTRANS_IS_PRODUCTION")),
            gateway_timeout_seconds=float(env.get("GATEWAY_TIMEOUT", "30")),
            ratelimit_enabled=_flag(env.get("RATELIMIT_ENABLED")),
            ratelimit_requests=int(env.get("RATELIMIT_REQUESTS", "60")),
            ratelimit_period=int(env.get("RATELIMIT_PERIOD", "60")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
