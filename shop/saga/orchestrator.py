"""
Saga Orchestrator — 注文・在庫・決済 Saga

Saga パターン（オーケストレーション型）:
  オーケストレーターが在庫台帳・注文ストア・決済ゲートウェイへの
  操作を順に実行する。途中で失敗したら補償トランザクション
  (Compensating Transaction) で整合性を保つ。

  注文作成フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 明細を検証 (商品の存在・販売中・在庫)                       │
  │  2. 注文 + 明細を 1 トランザクションで作成                      │
  │  3. 全明細の在庫を 1 トランザクションで引き当て                 │
  │     └─ 失敗 → 注文を論理削除 (補償)                            │
  │  4. (任意) ゲートウェイで決済取引を作成                         │
  │     └─ 失敗 → payment_status = failed (注文は残す)             │
  └──────────────────────────────────────────────────────────────┘

  キャンセル / ステータス更新は状態遷移表に従った条件付き UPDATE で行い、
  cancelled への遷移が確定した後に在庫を戻す (ベストエフォート)。

各ステップは Failure を返した時点で打ち切り、その Failure を
そのまま呼び出し元に返す。部分的な成功を成功として報告しない。
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import redis.asyncio as aioredis
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .. import events
from ..auth import users
from ..errors import ErrorKind, Failure
from ..inventory import ledger
from ..inventory import queries as inventory_queries
from ..inventory.queries import Product
from ..order import commands as order_commands
from ..order import queries as order_queries
from ..order.models import Order
from ..order.state import CANCELLABLE, OrderStatus, PaymentStatus, check_transition
from ..payment.gateway import Buyer, GatewayItem, MidtransGateway
from ..schemas import OrderLineIn

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 3
MAX_CAS_ATTEMPTS = 3


def to_gateway_amount(value: Decimal) -> int:
    """ゲートウェイに渡す整数金額 (通貨単位で四捨五入)。"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prepare_items(
    lines: list[OrderLineIn],
    products: dict[str, Product],
) -> tuple[list[dict], Decimal] | Failure:
    """
    明細を検証し、商品名・価格のスナップショットと小計・合計を計算する。
    同じ商品が複数行にある場合は数量を合算して在庫と比較する。
    """
    needed: dict[str, int] = {}
    items: list[dict] = []
    total = Decimal("0")

    for line in lines:
        if line.quantity <= 0:
            return Failure(ErrorKind.VALIDATION, "Quantity must be greater than 0")

        product = products.get(line.product_id)
        if product is None:
            return Failure(
                ErrorKind.NOT_FOUND,
                f"Product with ID {line.product_id} not found",
                detail={"product_id": line.product_id},
            )
        if not product.is_active:
            return Failure(
                ErrorKind.INACTIVE,
                f"Product {product.name} is not available",
                detail={"product_id": product.id},
            )

        needed[product.id] = needed.get(product.id, 0) + line.quantity
        if product.stock < needed[product.id]:
            return Failure(
                ErrorKind.INSUFFICIENT_STOCK,
                f"Insufficient stock for {product.name}. Available: {product.stock}",
                detail={
                    "product_id": product.id,
                    "requested": needed[product.id],
                    "available": product.stock,
                },
            )

        subtotal = product.price * line.quantity
        total += subtotal
        items.append(
            {
                "id": str(uuid.uuid4()),
                "product_id": product.id,
                "product_name": product.name,
                "product_price": product.price,
                "quantity": line.quantity,
                "subtotal": subtotal,
            }
        )

    return items, total


def reservation_order(items: list[dict]) -> list[tuple[str, int]]:
    """
    引き当てる (product_id, 数量) の一覧。商品ごとに数量を合算し、
    product_id 順に並べる (同時実行される注文どうしが同じ順序で行ロックを取る)。
    """
    totals: dict[str, int] = {}
    for item in items:
        totals[item["product_id"]] = totals.get(item["product_id"], 0) + item["quantity"]
    return sorted(totals.items())


async def restore_order_stock(session_factory: sessionmaker, order: Order) -> None:
    """
    キャンセルされた注文の在庫を戻す (補償)。

    明細ごとに別トランザクション。1 件失敗しても他の明細は続行し、
    失敗はログに残すだけでロールバックも再試行もしない。
    """
    for item in order.items:
        try:
            async with session_factory() as session:
                failure = await ledger.restore(session, item.product_id, item.quantity)
                await session.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to restore stock for product %s (order %s)",
                item.product_id,
                order.order_number,
            )
            continue
        if failure:
            logger.warning(
                "Stock restore anomaly for order %s: %s", order.order_number, failure.message
            )


def _begin(saga_log: list[dict], action: str) -> dict:
    entry = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    saga_log.append(entry)
    return entry


def _failed(entry: dict, failure: Failure) -> Failure:
    entry["status"] = "FAILED"
    entry["error"] = failure.message
    return failure


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MidtransGateway,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.redis = redis

    # ── 注文作成 ─────────────────────────────────

    async def create_order(
        self,
        user_id: str,
        lines: list[OrderLineIn],
        payment_method: str | None = None,
        notes: str | None = None,
        wants_gateway_transaction: bool = False,
    ) -> Order | Failure:
        """
        注文作成 Saga を実行する。

        成功時は明細付きの注文 (決済を要求した場合はトークン・URL 付き) を返す。
        """
        saga_log: list[dict] = []

        if not lines:
            return Failure(ErrorKind.VALIDATION, "Order items must be a non-empty array")

        # ── Step 1: 明細を検証 ──────────────────────
        entry = _begin(saga_log, "ValidateItems")
        buyer = None
        async with self.session_factory() as session:
            products = await inventory_queries.get_products(
                session, [line.product_id for line in lines]
            )
            if wants_gateway_transaction:
                buyer = await users.get_user(session, user_id)

        prepared = prepare_items(lines, products)
        if wants_gateway_transaction and buyer is None:
            prepared = Failure(ErrorKind.NOT_FOUND, "User not found")
        if isinstance(prepared, Failure):
            _failed(entry, prepared)
            await self._publish_saga_event("SagaFailed", None, saga_log)
            return prepared
        items, total_amount = prepared
        entry["status"] = "COMPLETED"

        # ── Step 2: 注文 + 明細を作成 ────────────────
        entry = _begin(saga_log, "CreateOrder")
        order_id = str(uuid.uuid4())
        order_number = None
        for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
            candidate = order_commands.generate_order_number()
            try:
                async with self.session_factory() as session:
                    await order_commands.insert_order(
                        session,
                        order_id=order_id,
                        order_number=candidate,
                        user_id=user_id,
                        total_amount=total_amount,
                        payment_method=payment_method,
                        notes=notes,
                        items=items,
                    )
                    await session.commit()
            except IntegrityError:
                logger.warning("Order number collision on %s, retrying", candidate)
                continue
            order_number = candidate
            break

        if order_number is None:
            failure = _failed(
                entry, Failure(ErrorKind.CONFLICT, "Could not allocate a unique order number")
            )
            await self._publish_saga_event("SagaFailed", None, saga_log)
            return failure
        entry["status"] = "COMPLETED"
        entry["order_number"] = order_number

        # ── Step 3: 在庫を引き当て ──────────────────
        entry = _begin(saga_log, "ReserveStock")
        failure = None
        try:
            async with self.session_factory() as session:
                for product_id, quantity in reservation_order(items):
                    failure = await ledger.reserve(session, product_id, quantity)
                    if failure:
                        await session.rollback()
                        break
                else:
                    await session.commit()
        except SQLAlchemyError as e:
            logger.exception("Stock reservation failed for order %s", order_number)
            failure = Failure(
                ErrorKind.INTERNAL,
                "Could not reserve stock, please retry",
                detail={"reason": type(e).__name__},
            )

        if failure:
            # 検証後に他の注文が在庫を取った、または DB エラー → 補償: 注文を論理削除
            _failed(entry, failure)
            await self._compensate_delete(order_id, order_number, saga_log)
            await self._publish_saga_event("SagaCompensated", order_number, saga_log)
            return failure
        entry["status"] = "COMPLETED"

        await events.publish(
            self.redis,
            events.ORDER_EVENTS,
            events.OrderPlaced(
                order_id=order_id,
                order_number=order_number,
                user_id=user_id,
                total_amount=total_amount,
            ),
        )

        # ── Step 4: 決済取引を作成 (任意) ────────────
        if wants_gateway_transaction:
            entry = _begin(saga_log, "CreatePaymentTransaction")
            gateway_items = [
                GatewayItem(
                    id=item["product_id"],
                    price=to_gateway_amount(item["product_price"]),
                    quantity=item["quantity"],
                    name=item["product_name"],
                )
                for item in items
            ]
            result = await self.gateway.create_transaction(
                order_number,
                sum(gi.price * gi.quantity for gi in gateway_items),
                Buyer(first_name=buyer.full_name, email=buyer.email, phone=buyer.phone or ""),
                gateway_items,
            )
            if isinstance(result, Failure):
                _failed(entry, result)
                await self._mark_payment_failed(order_id, order_number)
                await self._publish_saga_event("SagaFailed", order_number, saga_log)
                return Failure(
                    ErrorKind.GATEWAY,
                    f"Failed to create payment transaction: {result.message}",
                    code=result.code,
                    detail={"order_id": order_id, "order_number": order_number},
                )

            try:
                async with self.session_factory() as session:
                    await order_commands.set_gateway_transaction(
                        session, order_id, result.token, result.redirect_url
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                logger.exception("Could not store payment token for order %s", order_number)
                _failed(entry, Failure(ErrorKind.INTERNAL, str(e)))
                await self._publish_saga_event("SagaFailed", order_number, saga_log)
                return Failure(
                    ErrorKind.INTERNAL,
                    "Failed to save payment transaction",
                    detail={"order_id": order_id, "order_number": order_number},
                )
            entry["status"] = "COMPLETED"

        await self._publish_saga_event("SagaCompleted", order_number, saga_log)
        logger.info("Order %s created (total=%s)", order_number, total_amount)
        return await self._reload(order_id)

    # ── キャンセル / ステータス更新 ─────────────────

    async def cancel_order(
        self,
        requester_id: str,
        requester_role: str,
        order_id: str,
    ) -> Order | Failure:
        """注文をキャンセルする。所有者または管理者のみ、pending / processing のみ。"""

        def guard(order: Order) -> Failure | None:
            if requester_role != "admin" and order.user_id != requester_id:
                return Failure(ErrorKind.FORBIDDEN, "You are not authorized to cancel this order")
            if order.status not in CANCELLABLE:
                return Failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot cancel order with status: {order.status.value}",
                    detail={"from": order.status.value, "to": OrderStatus.CANCELLED.value},
                )
            return check_transition(order.status, OrderStatus.CANCELLED)

        return await self._change_status(order_id, OrderStatus.CANCELLED, guard)

    async def update_status(
        self,
        requester_role: str,
        order_id: str,
        new_status: OrderStatus,
    ) -> Order | Failure:
        """管理者によるステータス更新。遷移表にない遷移は invalid_transition。"""
        if requester_role != "admin":
            return Failure(ErrorKind.FORBIDDEN, "Only administrators can update order status")
        return await self._change_status(
            order_id, new_status, lambda order: check_transition(order.status, new_status)
        )

    async def _change_status(self, order_id: str, new_status: OrderStatus, guard) -> Order | Failure:
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self.session_factory() as session:
                order = await order_queries.get_order(session, order_id)
                if order is None:
                    return Failure(ErrorKind.NOT_FOUND, "Order not found")
                failure = guard(order)
                if failure:
                    return failure
                if await order_commands.transition_status(
                    session, order.id, order.status, new_status
                ):
                    await session.commit()
                    break
            logger.info("Order %s changed concurrently, re-reading", order_id)
        else:
            return Failure(ErrorKind.CONFLICT, "Order was modified concurrently, please retry")

        if new_status is OrderStatus.CANCELLED:
            await restore_order_stock(self.session_factory, order)
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
            "Order %s status %s -> %s", order.order_number, order.status.value, new_status.value
        )
        return await self._reload(order.id)

    # ── 補助 ───────────────────────────────────

    async def _reload(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            return await order_queries.get_order(session, order_id)

    async def _compensate_delete(
        self, order_id: str, order_number: str, saga_log: list[dict]
    ) -> None:
        entry = _begin(saga_log, "DeleteOrder (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                await order_commands.soft_delete(session, order_id)
                await session.commit()
            entry["status"] = "COMPLETED"
        except SQLAlchemyError as e:
            entry["status"] = "FAILED"
            entry["error"] = str(e)
            logger.exception("Compensating delete failed for order %s", order_number)

    async def _mark_payment_failed(self, order_id: str, order_number: str) -> None:
        async with self.session_factory() as session:
            updated = await order_commands.apply_payment_update(
                session,
                order_id,
                expected_status=OrderStatus.PENDING,
                expected_payment=PaymentStatus.PENDING,
                new_status=OrderStatus.PENDING,
                new_payment=PaymentStatus.FAILED,
            )
            await session.commit()
        if updated:
            await events.publish(
                self.redis,
                events.ORDER_EVENTS,
                events.PaymentStatusChanged(
                    order_id=order_id,
                    order_number=order_number,
                    old_payment_status=PaymentStatus.PENDING.value,
                    new_payment_status=PaymentStatus.FAILED.value,
                ),
            )

    async def _publish_saga_event(
        self,
        event_type: str,
        order_number: str | None,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        await events.publish_raw(
            self.redis,
            events.SAGA_EVENTS,
            {
                "event_type": event_type,
                "order_number": order_number,
                "saga_log": saga_log,
            },
        )
