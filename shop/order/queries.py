"""
Order Service — クエリハンドラ (Read 側)

論理削除された注文 (deleted_at が入っているもの) は見えない。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, OrderItem

_ORDER_COLUMNS = """
    id, order_number, user_id, total_amount, status, payment_status,
    payment_method, snap_token, payment_url, notes, created_at, updated_at
"""


async def get_items(session: AsyncSession, order_id: str) -> list[OrderItem]:
    result = await session.execute(
        text("""
            SELECT id, order_id, product_id, product_name, product_price,
                   quantity, subtotal, created_at
            FROM order_items
            WHERE order_id = :order_id
            ORDER BY created_at, id
        """),
        {"order_id": order_id},
    )
    return [OrderItem.model_validate(dict(row._mapping)) for row in result.fetchall()]


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    """注文を明細付きで取得する。"""
    result = await session.execute(
        text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = :id AND deleted_at IS NULL"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    order = Order.model_validate(dict(row._mapping))
    order.items = await get_items(session, order.id)
    return order


async def get_order_by_number(session: AsyncSession, order_number: str) -> Order | None:
    result = await session.execute(
        text(
            f"SELECT {_ORDER_COLUMNS} FROM orders "
            "WHERE order_number = :number AND deleted_at IS NULL"
        ),
        {"number": order_number},
    )
    row = result.fetchone()
    if not row:
        return None
    order = Order.model_validate(dict(row._mapping))
    order.items = await get_items(session, order.id)
    return order


async def list_orders(
    session: AsyncSession,
    user_id: str | None,
    page: int = 1,
    limit: int = 10,
    with_items: bool = True,
) -> dict:
    """
    注文一覧を新しい順に返す。user_id が None なら全利用者の注文 (管理者用)。
    """
    where = "deleted_at IS NULL"
    params: dict = {"limit": limit, "offset": (page - 1) * limit}
    if user_id is not None:
        where += " AND user_id = :user_id"
        params["user_id"] = user_id

    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM orders WHERE {where}"), params)
    ).scalar_one()
    result = await session.execute(
        text(f"""
            SELECT {_ORDER_COLUMNS} FROM orders
            WHERE {where}
            ORDER BY created_at DESC, order_number DESC
            LIMIT :limit OFFSET :offset
        """),
        params,
    )
    orders = [Order.model_validate(dict(row._mapping)) for row in result.fetchall()]
    if with_items:
        for order in orders:
            order.items = await get_items(session, order.id)

    return {
        "data": orders,
        "pagination": {
            "current_page": page,
            "per_page": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }
