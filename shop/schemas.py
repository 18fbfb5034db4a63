"""
Shop Service — リクエストスキーマ

境界で一度だけ検証し、以降は型付きの値として下流に渡す。
"""

from pydantic import BaseModel, EmailStr, Field

from .order.state import OrderStatus


class OrderLineIn(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    order_items: list[OrderLineIn] = Field(min_length=1)
    payment_method: str | None = Field(default=None, max_length=50)
    notes: str | None = None


class CreatePaymentRequest(CreateOrderRequest):
    payment_method: str = Field(min_length=1, max_length=50)


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6, max_length=72)
    full_name: str = Field(min_length=3, max_length=100)
    phone: str | None = Field(default=None, max_length=20)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=72)


class IdentitySignInRequest(BaseModel):
    """ID プロバイダのコールバックで得た利用者情報"""
    external_id: str = Field(min_length=1, max_length=255)
    email: EmailStr
    name: str = Field(min_length=1, max_length=100)
