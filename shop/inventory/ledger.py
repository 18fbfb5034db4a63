"""
Inventory Service — 在庫台帳 (Stock Ledger)

在庫の引き当て(reserve)と戻し(restore)。
引き当ては「在庫確認 → 減算」を 1 本の条件付き UPDATE で行う:

    UPDATE products SET stock = stock - :qty WHERE id = :id AND stock >= :qty

判定と減算はデータベース側で不可分。複数インスタンスが同時に
動いても在庫が負になることはない。

コミットは呼び出し側の責務。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ErrorKind, Failure
from .queries import get_product


async def reserve(session: AsyncSession, product_id: str, quantity: int) -> Failure | None:
    """
    在庫引き当てコマンド

    成功なら None。在庫不足・商品なしなら Failure を返し、在庫は一切変えない。
    """
    if quantity <= 0:
        return Failure(ErrorKind.VALIDATION, "Quantity must be greater than 0")

    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock - :qty, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND stock >= :qty AND deleted_at IS NULL
        """),
        {"id": product_id, "qty": quantity},
    )
    if result.rowcount == 1:
        return None

    # 更新されなかった理由を区別する (ここでは何も書き換えない)
    product = await get_product(session, product_id)
    if product is None:
        return Failure(
            ErrorKind.NOT_FOUND,
            f"Product with ID {product_id} not found",
            detail={"product_id": product_id},
        )
    return Failure(
        ErrorKind.INSUFFICIENT_STOCK,
        f"Insufficient stock for {product.name}. Available: {product.stock}",
        detail={"product_id": product_id, "requested": quantity, "available": product.stock},
    )


async def restore(session: AsyncSession, product_id: str, quantity: int) -> Failure | None:
    """在庫戻しコマンド (キャンセル時)。上限チェックはしない。"""
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock + :qty, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id
        """),
        {"id": product_id, "qty": quantity},
    )
    if result.rowcount == 1:
        return None
    return Failure(
        ErrorKind.NOT_FOUND,
        f"Product with ID {product_id} not found",
        detail={"product_id": product_id},
    )
