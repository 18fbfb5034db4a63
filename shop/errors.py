"""
Shop Service — エラー分類

想定内の失敗(認証失敗・在庫不足・不正な状態遷移など)は例外ではなく
Failure 値として返す。境界層 (FastAPI ルート) で unwrap() が
HTTPException に変換する。例外は本当に想定外の障害だけに使う。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from fastapi import HTTPException

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INACTIVE = "inactive"
    GATEWAY = "gateway"
    INTERNAL = "internal"


HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_TRANSITION: 400,
    ErrorKind.INSUFFICIENT_STOCK: 400,
    ErrorKind.INACTIVE: 400,
    ErrorKind.GATEWAY: 500,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class Failure:
    """操作の失敗結果。kind が分類、code がその中の細分類。"""

    kind: ErrorKind
    message: str
    code: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        # 検証できない Webhook は 4xx で拒否する
        if self.kind is ErrorKind.GATEWAY and self.code == "unverified":
            return 401
        return HTTP_STATUS[self.kind]

    def to_detail(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code or self.kind.value, "message": self.message}
        body.update(self.detail)
        return body


def unwrap(result: T | Failure) -> T:
    """Failure なら HTTPException を送出し、成功値ならそのまま返す。"""
    if isinstance(result, Failure):
        raise HTTPException(status_code=result.status_code, detail=result.to_detail())
    return result
