"""
Payment — Webhook リコンサイラ

ゲートウェイから非同期に届く通知 (重複・順序逆転あり) を注文の
決済ステータス / 注文ステータスに反映する。

  1. 本文をパースし、署名を検証する (検証できない通知は拒否)
  2. ステータスを正規化し、注文番号で注文を引く
  3. plan_payment_update で遷移先を決め、条件付き UPDATE で適用する
     └─ 他の更新に負けたら読み直してやり直す

同じ通知を何度適用しても 1 回適用したのと同じ結果になる。
決済ステータスを後退させる通知は何もしない (成功扱い)。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from .. import events
from ..errors import ErrorKind, Failure
from ..order import commands as order_commands
from ..order import queries as order_queries
from ..order.models import Order
from ..order.state import OrderStatus, PaymentStatus, plan_payment_update
from ..saga.orchestrator import MAX_CAS_ATTEMPTS, restore_order_stock
from .gateway import MidtransGateway, Notification, normalize_status

logger = logging.getLogger(__name__)


def parse_notification(raw_body: bytes) -> Notification | Failure:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return Failure(ErrorKind.VALIDATION, "Invalid notification payload")
    if not isinstance(payload, dict):
        return Failure(ErrorKind.VALIDATION, "Invalid notification payload")
    try:
        return Notification.model_validate(payload)
    except ValidationError as e:
        missing = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        return Failure(
            ErrorKind.VALIDATION,
            "Invalid notification payload",
            detail={"fields": missing},
        )


class WebhookReconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MidtransGateway,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.redis = redis

    async def reconcile(self, raw_body: bytes) -> Order | Failure:
        notification = parse_notification(raw_body)
        if isinstance(notification, Failure):
            logger.warning("Rejected notification: %s", notification.message)
            return notification

        if not self.gateway.verify_notification(notification):
            logger.warning("Unverified notification for order %s", notification.order_id)
            return Failure(
                ErrorKind.GATEWAY, "Invalid notification signature", code="unverified"
            )

        new_payment = normalize_status(
            notification.transaction_status, notification.fraud_status
        )

        for _ in range(MAX_CAS_ATTEMPTS):
            async with self.session_factory() as session:
                order = await order_queries.get_order_by_number(session, notification.order_id)
                if order is None:
                    logger.warning("Notification for unknown order %s", notification.order_id)
                    return Failure(ErrorKind.NOT_FOUND, "Order not found")

                plan = plan_payment_update(order.status, order.payment_status, new_payment)
                if plan is None:
                    # 重複または順序の逆転した通知
                    logger.info(
                        "Ignoring %s notification for order %s (payment_status=%s)",
                        new_payment.value,
                        order.order_number,
                        order.payment_status.value,
                    )
                    return order

                new_status, _ = plan
                if await order_commands.apply_payment_update(
                    session,
                    order.id,
                    expected_status=order.status,
                    expected_payment=order.payment_status,
                    new_status=new_status,
                    new_payment=new_payment,
                ):
                    await session.commit()
                    break
            logger.info("Order %s changed concurrently, re-reading", order.order_number)
        else:
            return Failure(ErrorKind.CONFLICT, "Order was modified concurrently, please retry")

        if order.status is OrderStatus.CANCELLED and new_payment is PaymentStatus.SUCCESS:
            logger.warning("Payment succeeded for cancelled order %s", order.order_number)
        if new_status is OrderStatus.CANCELLED and order.status is not OrderStatus.CANCELLED:
            await restore_order_stock(self.session_factory, order)

        await events.publish(
            self.redis,
            events.ORDER_EVENTS,
            events.PaymentStatusChanged(
                order_id=order.id,
                order_number=order.order_number,
                old_payment_status=order.payment_status.value,
                new_payment_status=new_payment.value,
            ),
        )
        if new_status is not order.status:
            await events.publish(
                self.redis,
                events.ORDER_EVENTS,
                events.OrderStatusChanged(
                    order_id=order.id,
                    old_status=order.status.value,
                    new_status=new_status.value,
                ),
            )

        logger.info(
            "Order %s payment %s -> %s, status %s -> %s",
            order.order_number,
            order.payment_status.value,
            new_payment.value,
            order.status.value,
            new_status.value,
        )
        async with self.session_factory() as session:
            return await order_queries.get_order(session, order.id)
