"""
Order Service — 注文ステータスの状態機械

状態遷移:
    pending    → processing, cancelled
    processing → shipped, cancelled
    shipped    → delivered, cancelled
    delivered, cancelled は終端 (遷移先なし)

決済ステータスは注文ステータスとは独立しており、終端 (success / failed)
に向かって単調にしか進まない。success が pending や challenge に
戻ることはない。
"""

from enum import Enum

from ..errors import ErrorKind, Failure


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CHALLENGE = "challenge"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# 利用者自身がキャンセルできる状態
CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})

TERMINAL_PAYMENT = frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED})

_PAYMENT_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.CHALLENGE: 1,
    PaymentStatus.SUCCESS: 2,
    PaymentStatus.FAILED: 2,
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS[current]


def check_transition(current: OrderStatus, new: OrderStatus) -> Failure | None:
    if can_transition(current, new):
        return None
    return Failure(
        ErrorKind.INVALID_TRANSITION,
        f"Cannot change order status from '{current.value}' to '{new.value}'",
        detail={"from": current.value, "to": new.value},
    )


def payment_can_advance(current: PaymentStatus, new: PaymentStatus) -> bool:
    """決済ステータスを current から new に進めてよいか。"""
    if current in TERMINAL_PAYMENT:
        return False
    return _PAYMENT_RANK[new] > _PAYMENT_RANK[current]


def plan_payment_update(
    status: OrderStatus,
    payment_status: PaymentStatus,
    new_payment: PaymentStatus,
) -> tuple[OrderStatus, PaymentStatus] | None:
    """
    決済結果を適用した後の (注文ステータス, 決済ステータス) を求める。

    適用すると決済ステータスが後退する、または変化しない場合は None
    (重複・順序逆転した通知は何もしない)。
    注文ステータスは状態遷移表に沿った場合だけ動かす。
    """
    if not payment_can_advance(payment_status, new_payment):
        return None

    target = status
    if new_payment is PaymentStatus.SUCCESS and status is OrderStatus.PENDING:
        target = OrderStatus.PROCESSING
    elif new_payment is PaymentStatus.FAILED and status in CANCELLABLE:
        target = OrderStatus.CANCELLED

    if target is not status and not can_transition(status, target):
        return None
    return target, new_payment
