"""
Payment — 決済ゲートウェイアダプタ (Midtrans Snap)

注文を外部ゲートウェイの取引作成リクエストに変換し、ゲートウェイの
ステータス語彙を自システムの決済ステータスに正規化する。

  - 金額は整数 (IDR, 小数なし) のみ。float は境界を越えない。
  - すべての HTTP 呼び出しにタイムアウトがある。タイムアウトは
    ゲートウェイ失敗として扱う。
  - サーバーキー未設定の場合は開発用のモック応答を返す。
"""

import hashlib
import hmac
import logging
import secrets

import httpx
from pydantic import BaseModel, ConfigDict

from ..config import Settings
from ..errors import ErrorKind, Failure
from ..order.state import PaymentStatus

logger = logging.getLogger(__name__)

SNAP_URL = {
    True: "https://app.midtrans.com/snap/v1/transactions",
    False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
}
VTWEB_URL = {
    True: "https://app.midtrans.com/snap/v2/vtweb/",
    False: "https://app.sandbox.midtrans.com/snap/v2/vtweb/",
}
API_URL = {
    True: "https://api.midtrans.com",
    False: "https://api.sandbox.midtrans.com",
}
MOCK_PAYMENT_URL = "https://simulator.sandbox.midtrans.com/mock-payment/"
_PLACEHOLDER_KEY = "your-midtrans-server-key"


class Buyer(BaseModel):
    first_name: str
    email: str
    phone: str = ""


class GatewayItem(BaseModel):
    id: str
    price: int
    quantity: int
    name: str


class GatewayTransaction(BaseModel):
    token: str
    redirect_url: str


class Notification(BaseModel):
    """Midtrans の HTTP 通知 (Webhook) 本文"""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    order_id: str
    status_code: str
    gross_amount: str
    signature_key: str
    transaction_status: str
    fraud_status: str | None = None
    payment_type: str | None = None
    transaction_id: str | None = None
    transaction_time: str | None = None


def normalize_status(transaction_status: str | None, fraud_status: str | None) -> PaymentStatus:
    """
    ゲートウェイのステータスを決済ステータスに正規化する。

        capture + challenge          → challenge
        capture + accept             → success
        settlement                   → success
        cancel / deny / expire       → failed
        pending                      → pending
        それ以外 (未知の値を含む)    → pending  (黙って success にはしない)
    """
    if transaction_status == "capture":
        if fraud_status == "challenge":
            return PaymentStatus.CHALLENGE
        if fraud_status == "accept":
            return PaymentStatus.SUCCESS
        return PaymentStatus.PENDING
    if transaction_status == "settlement":
        return PaymentStatus.SUCCESS
    if transaction_status in ("cancel", "deny", "expire"):
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    messages = body.get("error_messages") if isinstance(body, dict) else None
    if messages:
        return "; ".join(str(m) for m in messages)
    if isinstance(body, dict) and body.get("status_message"):
        return str(body["status_message"])
    return f"HTTP {response.status_code}"


class MidtransGateway:
    def __init__(
        self,
        server_key: str,
        is_production: bool = False,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "MidtransGateway":
        return cls(
            settings.gateway_server_key,
            is_production=settings.gateway_is_production,
            timeout=settings.gateway_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.server_key) and self.server_key != _PLACEHOLDER_KEY

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            auth=(self.server_key, ""),
            headers={"Accept": "application/json"},
        )

    async def create_transaction(
        self,
        order_number: str,
        amount: int,
        buyer: Buyer,
        items: list[GatewayItem],
    ) -> GatewayTransaction | Failure:
        """Snap 取引を作成し、トークンと決済ページの URL を返す。"""
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError(f"gateway amount must be an int, got {type(amount).__name__}")

        if not self.configured:
            logger.warning("Midtrans not configured. Using mock response.")
            return GatewayTransaction(
                token=f"mock-snap-token-{secrets.token_hex(8)}",
                redirect_url=MOCK_PAYMENT_URL + order_number,
            )

        params = {
            "transaction_details": {"order_id": order_number, "gross_amount": amount},
            "customer_details": buyer.model_dump(),
            "item_details": [
                {**item.model_dump(), "name": item.name[:50]} for item in items
            ],
        }
        try:
            async with self._client() as client:
                resp = await client.post(SNAP_URL[self.is_production], json=params)
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException:
            logger.error("Midtrans timed out creating transaction %s", order_number)
            return Failure(ErrorKind.GATEWAY, "Payment gateway timed out", code="timeout")
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.error("Midtrans rejected transaction %s: %s", order_number, message)
            return Failure(ErrorKind.GATEWAY, message, code="rejected")
        except httpx.HTTPError as e:
            logger.error("Midtrans error for %s: %s", order_number, e)
            return Failure(ErrorKind.GATEWAY, str(e) or type(e).__name__, code="unavailable")
        except ValueError:
            return Failure(ErrorKind.GATEWAY, "Invalid gateway response", code="bad_response")

        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            return Failure(ErrorKind.GATEWAY, "Gateway response has no token", code="bad_response")
        return GatewayTransaction(
            token=token,
            redirect_url=body.get("redirect_url") or VTWEB_URL[self.is_production] + token,
        )

    async def check_status(self, order_number: str) -> dict | Failure:
        """ゲートウェイ側の取引ステータスを問い合わせる。"""
        if not self.configured:
            return {
                "order_id": order_number,
                "status_message": "Midtrans not configured",
                "mock": True,
            }
        try:
            async with self._client() as client:
                resp = await client.get(f"{API_URL[self.is_production]}/v2/{order_number}/status")
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException:
            return Failure(ErrorKind.GATEWAY, "Payment gateway timed out", code="timeout")
        except httpx.HTTPStatusError as e:
            return Failure(ErrorKind.GATEWAY, _error_message(e.response), code="rejected")
        except httpx.HTTPError as e:
            return Failure(ErrorKind.GATEWAY, str(e) or type(e).__name__, code="unavailable")
        except ValueError:
            return Failure(ErrorKind.GATEWAY, "Invalid gateway response", code="bad_response")

    def signature_for(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode()).hexdigest()

    def verify_notification(self, notification: Notification) -> bool:
        """通知の signature_key を検証する。モック運用では常に False。"""
        if not self.configured:
            return False
        expected = self.signature_for(
            notification.order_id, notification.status_code, notification.gross_amount
        )
        return hmac.compare_digest(expected, notification.signature_key)
