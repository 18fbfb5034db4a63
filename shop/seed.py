"""
Shop Service — 初期データ投入

    python -m shop.seed

スキーマを作成し、管理者・デモ利用者・商品を登録する。
既に存在する行 (email / slug が同じもの) はスキップする。
"""

import asyncio
import logging
import uuid
from decimal import Decimal

from sqlalchemy import Numeric, bindparam, text

from .auth.users import hash_password
from .config import Settings
from .db import init_schema, make_engine, make_session_factory

logger = logging.getLogger(__name__)

USERS = [
    {
        "username": "admin",
        "email": "admin@example.com",
        "password": "admin123",
        "full_name": "Administrator",
        "phone": "081234567890",
        "role": "admin",
    },
    {
        "username": "user",
        "email": "user@example.com",
        "password": "user123",
        "full_name": "Regular User",
        "phone": "081234567891",
        "role": "user",
    },
]

PRODUCTS = [
    ("Laptop ASUS ROG", "laptop-asus-rog", Decimal("15000000"), 10),
    ("iPhone 15 Pro Max", "iphone-15-pro-max", Decimal("20000000"), 15),
    ("Samsung Galaxy S24 Ultra", "samsung-galaxy-s24-ultra", Decimal("18000000"), 20),
    ("Sony WH-1000XM5", "sony-wh-1000xm5", Decimal("5000000"), 30),
    ("Apple Watch Series 9", "apple-watch-series-9", Decimal("7000000"), 25),
    ("MacBook Pro M3", "macbook-pro-m3", Decimal("25000000"), 8),
]


async def seed(settings: Settings) -> None:
    engine = make_engine(settings.database_url)
    await init_schema(engine)
    session_factory = make_session_factory(engine)

    async with session_factory() as session:
        for user in USERS:
            exists = (
                await session.execute(
                    text("SELECT 1 FROM users WHERE email = :email"), {"email": user["email"]}
                )
            ).fetchone()
            if exists:
                logger.info("User %s already exists, skipping", user["email"])
                continue
            await session.execute(
                text("""
                    INSERT INTO users
                        (id, username, email, password_hash, full_name, phone, role, is_active)
                    VALUES
                        (:id, :username, :email, :password_hash, :full_name, :phone, :role, :active)
                """),
                {
                    "id": str(uuid.uuid4()),
                    "username": user["username"],
                    "email": user["email"],
                    "password_hash": hash_password(user["password"], settings.password_hash_rounds),
                    "full_name": user["full_name"],
                    "phone": user["phone"],
                    "role": user["role"],
                    "active": True,
                },
            )
            logger.info("Created user %s (%s)", user["email"], user["role"])

        for name, slug, price, stock in PRODUCTS:
            exists = (
                await session.execute(
                    text("SELECT 1 FROM products WHERE slug = :slug"), {"slug": slug}
                )
            ).fetchone()
            if exists:
                continue
            await session.execute(
                text("""
                    INSERT INTO products (id, name, slug, category, price, stock, is_active)
                    VALUES (:id, :name, :slug, 'electronics', :price, :stock, :active)
                """).bindparams(bindparam("price", type_=Numeric(15, 2))),
                {
                    "id": str(uuid.uuid4()),
                    "name": name,
                    "slug": slug,
                    "price": price,
                    "stock": stock,
                    "active": True,
                },
            )
            logger.info("Created product %s", name)

        await session.commit()
    await engine.dispose()


if __name__ == "__main__":
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())
    asyncio.run(seed(settings))
