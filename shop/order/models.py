"""
Order Service — 注文リードモデル

OrderItem は作成時点の商品名・価格をスナップショットとして保持し、
後から商品が編集されても過去の注文には影響しない。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from .state import OrderStatus, PaymentStatus


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    product_name: str
    product_price: Decimal
    quantity: int
    subtotal: Decimal
    created_at: datetime | None = None


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    total_amount: Decimal
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str | None = None
    snap_token: str | None = None
    payment_url: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    items: list[OrderItem] = []
