"""
Shop Service — イベント定義と発行

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
コミット後に Redis Pub/Sub へ発行するが、発行はベストエフォートで
失敗してもログに残すだけで呼び出し元には伝播させない。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ORDER_EVENTS = "order_events"
SAGA_EVENTS = "saga_events"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderPlaced(BaseModel):
    """注文が作成され、在庫が引き当てられた"""
    order_id: str
    order_number: str
    user_id: str
    total_amount: Decimal
    timestamp: datetime = Field(default_factory=_now)


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: str
    old_status: str
    new_status: str
    timestamp: datetime = Field(default_factory=_now)


class PaymentStatusChanged(BaseModel):
    """決済ステータスが更新された(Webhook またはゲートウェイ失敗)"""
    order_id: str
    order_number: str
    old_payment_status: str
    new_payment_status: str
    timestamp: datetime = Field(default_factory=_now)


async def publish(redis: aioredis.Redis | None, channel: str, event: BaseModel) -> None:
    """イベントを Redis に発行する。"""
    await publish_raw(
        redis,
        channel,
        {"event_type": type(event).__name__, "data": event.model_dump(mode="json")},
    )


async def publish_raw(redis: aioredis.Redis | None, channel: str, message: dict) -> None:
    if redis is None:
        return
    try:
        await redis.publish(channel, json.dumps(message, default=str))
    except aioredis.RedisError:
        logger.warning("Failed to publish %s on %s", message.get("event_type"), channel)
