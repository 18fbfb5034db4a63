"""
Order Service — HTTP エンドポイント

Command (作成・キャンセル・ステータス更新) は Saga オーケストレーターに、
Query (一覧・詳細) はクエリハンドラに委譲する。
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.tokens import Claims
from ..deps import current_claims, get_session, require_admin
from ..errors import ErrorKind, Failure, unwrap
from ..schemas import CreateOrderRequest, UpdateStatusRequest
from . import queries

router = APIRouter(prefix="/orders", tags=["orders"])


# ── Query Endpoints (Read 側) ────────────────────

@router.get("")
async def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    claims: Claims = Depends(current_claims),
    session: AsyncSession = Depends(get_session),
):
    """自分の注文一覧 (管理者は全件)"""
    user_id = None if claims.is_admin else claims.user_id
    return await queries.list_orders(session, user_id, page, limit)


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    claims: Claims = Depends(current_claims),
    session: AsyncSession = Depends(get_session),
):
    order = await queries.get_order(session, order_id)
    if order is None:
        unwrap(Failure(ErrorKind.NOT_FOUND, "Order not found"))
    if not claims.is_admin and order.user_id != claims.user_id:
        unwrap(Failure(ErrorKind.FORBIDDEN, "You are not authorized to view this order"))
    return order


# ── Command Endpoints (Write 側) ─────────────────

@router.post("", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    request: Request,
    claims: Claims = Depends(current_claims),
):
    return unwrap(
        await request.app.state.orchestrator.create_order(
            claims.user_id,
            req.order_items,
            payment_method=req.payment_method,
            notes=req.notes,
        )
    )


@router.put("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    request: Request,
    claims: Claims = Depends(current_claims),
):
    return unwrap(
        await request.app.state.orchestrator.cancel_order(claims.user_id, claims.role, order_id)
    )


@router.delete("/{order_id}")
async def delete_order(
    order_id: str,
    request: Request,
    claims: Claims = Depends(current_claims),
):
    """注文の削除はキャンセルとして扱う。"""
    return unwrap(
        await request.app.state.orchestrator.cancel_order(claims.user_id, claims.role, order_id)
    )


@router.put("/{order_id}/status")
async def update_status(
    order_id: str,
    req: UpdateStatusRequest,
    request: Request,
    claims: Claims = Depends(require_admin),
):
    return unwrap(
        await request.app.state.orchestrator.update_status(claims.role, order_id, req.status)
    )
