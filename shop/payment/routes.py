"""
Payment — HTTP エンドポイント

/payments/notification だけは公開 (ゲートウェイの署名で認証)。
本文は生のまま受け取り、壊れた JSON でも 4xx で応答する。
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.tokens import Claims
from ..deps import current_claims, get_session
from ..errors import ErrorKind, Failure, unwrap
from ..order import queries as order_queries
from ..saga.orchestrator import to_gateway_amount
from ..schemas import CreatePaymentRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create", status_code=201)
async def create_payment(
    req: CreatePaymentRequest,
    request: Request,
    claims: Claims = Depends(current_claims),
):
    """注文を作成し、ゲートウェイの決済取引 (Snap トークン) を発行する。"""
    order = unwrap(
        await request.app.state.orchestrator.create_order(
            claims.user_id,
            req.order_items,
            payment_method=req.payment_method,
            notes=req.notes,
            wants_gateway_transaction=True,
        )
    )
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "amount": sum(to_gateway_amount(i.product_price) * i.quantity for i in order.items),
        "snap_token": order.snap_token,
        "payment_url": order.payment_url,
    }


@router.post("/notification")
async def notification(request: Request):
    raw_body = await request.body()
    order = unwrap(await request.app.state.reconciler.reconcile(raw_body))
    return {
        "message": "Notification processed",
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
    }


@router.get("/status/{order_number}")
async def payment_status(
    order_number: str,
    request: Request,
    claims: Claims = Depends(current_claims),
    session: AsyncSession = Depends(get_session),
):
    """ローカルの注文とゲートウェイ側の取引ステータスをまとめて返す。"""
    order = await order_queries.get_order_by_number(session, order_number)
    if order is None:
        unwrap(Failure(ErrorKind.NOT_FOUND, "Order not found"))
    if not claims.is_admin and order.user_id != claims.user_id:
        unwrap(Failure(ErrorKind.FORBIDDEN, "You are not authorized to view this order"))

    gateway_status = await request.app.state.gateway.check_status(order_number)
    if isinstance(gateway_status, Failure):
        logger.warning(
            "Could not fetch gateway status for %s: %s", order_number, gateway_status.message
        )
        gateway_status = {"error": gateway_status.message}

    return {
        "order": order.model_dump(exclude={"items"}),
        "midtrans_status": gateway_status,
    }


@router.get("/history")
async def payment_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    claims: Claims = Depends(current_claims),
    session: AsyncSession = Depends(get_session),
):
    """決済履歴 (自分の注文、管理者は全件)"""
    user_id = None if claims.is_admin else claims.user_id
    return await order_queries.list_orders(session, user_id, page, limit, with_items=False)
