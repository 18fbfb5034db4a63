"""
Inventory Service — クエリハンドラ (Read 側)
"""

from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


class Product(BaseModel):
    id: str
    name: str
    price: Decimal
    stock: int
    is_active: bool


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    result = await session.execute(
        text("""
            SELECT id, name, price, stock, is_active
            FROM products
            WHERE id = :id AND deleted_at IS NULL
        """),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return Product.model_validate(dict(row._mapping))


async def get_products(session: AsyncSession, product_ids: list[str]) -> dict[str, Product]:
    """複数商品を id → Product の辞書で返す。見つからない id は含まれない。"""
    if not product_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT id, name, price, stock, is_active
            FROM products
            WHERE id IN :ids AND deleted_at IS NULL
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": list(set(product_ids))},
    )
    return {
        row.id: Product.model_validate(dict(row._mapping))
        for row in result.fetchall()
    }
