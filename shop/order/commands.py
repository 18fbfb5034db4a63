"""
Order Service — コマンドハンドラ (Write 側)

ステータスの更新はすべて「期待する現在値」を WHERE 句に含めた
条件付き UPDATE (compare-and-swap) で行う。更新行数が 0 なら
他のリクエストや Webhook が先に状態を変えたということなので、
呼び出し側が読み直して判断し直す。

コミットは呼び出し側 (Saga / Reconciler) の責務。
"""

import secrets
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .state import OrderStatus, PaymentStatus

_MONEY = Numeric(15, 2)


def generate_order_number(now: datetime | None = None) -> str:
    """ORD-YYYYMMDD-XXXXXXXX 形式 (日付 + 32bit の乱数)。"""
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


async def insert_order(
    session: AsyncSession,
    *,
    order_id: str,
    order_number: str,
    user_id: str,
    total_amount: Decimal,
    payment_method: str | None,
    notes: str | None,
    items: list[dict],
) -> None:
    """注文行と全明細行を同じトランザクションで書き込む。"""
    await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, user_id, total_amount, status, payment_status,
                 payment_method, notes)
            VALUES
                (:id, :order_number, :user_id, :total_amount, :status, :payment_status,
                 :payment_method, :notes)
        """).bindparams(bindparam("total_amount", type_=_MONEY)),
        {
            "id": order_id,
            "order_number": order_number,
            "user_id": user_id,
            "total_amount": total_amount,
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": payment_method,
            "notes": notes,
        },
    )
    await session.execute(
        text("""
            INSERT INTO order_items
                (id, order_id, product_id, product_name, product_price, quantity, subtotal)
            VALUES
                (:id, :order_id, :product_id, :product_name, :product_price, :quantity, :subtotal)
        """).bindparams(
            bindparam("product_price", type_=_MONEY),
            bindparam("subtotal", type_=_MONEY),
        ),
        [{**item, "order_id": order_id} for item in items],
    )


async def transition_status(
    session: AsyncSession,
    order_id: str,
    expected: OrderStatus,
    new: OrderStatus,
) -> bool:
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :new, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status = :expected AND deleted_at IS NULL
        """),
        {"id": order_id, "expected": expected.value, "new": new.value},
    )
    return result.rowcount == 1


async def apply_payment_update(
    session: AsyncSession,
    order_id: str,
    *,
    expected_status: OrderStatus,
    expected_payment: PaymentStatus,
    new_status: OrderStatus,
    new_payment: PaymentStatus,
) -> bool:
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :new_status,
                payment_status = :new_payment,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = :id
              AND status = :expected_status
              AND payment_status = :expected_payment
              AND deleted_at IS NULL
        """),
        {
            "id": order_id,
            "expected_status": expected_status.value,
            "expected_payment": expected_payment.value,
            "new_status": new_status.value,
            "new_payment": new_payment.value,
        },
    )
    return result.rowcount == 1


async def set_gateway_transaction(
    session: AsyncSession,
    order_id: str,
    snap_token: str,
    payment_url: str,
) -> None:
    await session.execute(
        text("""
            UPDATE orders
            SET snap_token = :token, payment_url = :url, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id
        """),
        {"id": order_id, "token": snap_token, "url": payment_url},
    )


async def soft_delete(session: AsyncSession, order_id: str) -> None:
    """補償トランザクション: 注文を論理削除する (注文番号は予約されたまま)。"""
    await session.execute(
        text("""
            UPDATE orders
            SET deleted_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND deleted_at IS NULL
        """),
        {"id": order_id},
    )
