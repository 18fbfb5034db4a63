"""
Shop Service — データベース

非同期エンジンとセッションファクトリ、およびスキーマ定義。
DDL は PostgreSQL (本番) と SQLite (テスト) の両方で動く型だけを使う。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id              VARCHAR(36) PRIMARY KEY,
        username        VARCHAR(50) NOT NULL UNIQUE,
        email           VARCHAR(100) NOT NULL UNIQUE,
        password_hash   VARCHAR(255) NOT NULL,
        full_name       VARCHAR(100) NOT NULL,
        phone           VARCHAR(20),
        role            VARCHAR(10) NOT NULL DEFAULT 'user',
        oauth_provider  VARCHAR(50),
        oauth_id        VARCHAR(255),
        is_active       BOOLEAN NOT NULL DEFAULT TRUE,
        created_at      TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        updated_at      TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        deleted_at      TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id          VARCHAR(36) PRIMARY KEY,
        name        VARCHAR(200) NOT NULL,
        slug        VARCHAR(220),
        description TEXT,
        category    VARCHAR(100),
        price       NUMERIC(15, 2) NOT NULL CHECK (price >= 0),
        stock       INTEGER NOT NULL CHECK (stock >= 0),
        is_active   BOOLEAN NOT NULL DEFAULT TRUE,
        created_at  TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        updated_at  TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        deleted_at  TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id              VARCHAR(36) PRIMARY KEY,
        order_number    VARCHAR(50) NOT NULL UNIQUE,
        user_id         VARCHAR(36) NOT NULL REFERENCES users (id),
        total_amount    NUMERIC(15, 2) NOT NULL DEFAULT 0,
        status          VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_status  VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_method  VARCHAR(50),
        snap_token      VARCHAR(255),
        payment_url     TEXT,
        notes           TEXT,
        created_at      TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        updated_at      TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        deleted_at      TIMESTAMP WITH TIME ZONE
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id              VARCHAR(36) PRIMARY KEY,
        order_id        VARCHAR(36) NOT NULL REFERENCES orders (id),
        product_id      VARCHAR(36) NOT NULL REFERENCES products (id),
        product_name    VARCHAR(200) NOT NULL,
        product_price   NUMERIC(15, 2) NOT NULL,
        quantity        INTEGER NOT NULL CHECK (quantity > 0),
        subtotal        NUMERIC(15, 2) NOT NULL,
        created_at      TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_order_items_order_id ON order_items (order_id)",
]


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する (起動時・シード時)。"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))
