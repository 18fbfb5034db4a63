import uuid
from decimal import Decimal

import pytest
from sqlalchemy import text

from shop.auth.tokens import TokenService
from shop.auth.users import hash_password
from shop.config import Settings
from shop.db import init_schema, make_engine, make_session_factory

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


class FakeRedis:
    """pub/sub とレート制限で使うコマンドだけを持つインメモリ Redis"""

    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.counters: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def ttl(self, key):
        return self.ttls.get(key, -1)

    async def aclose(self):
        pass


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        token_secret=TEST_SECRET,
        password_hash_rounds=4,
    )


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
async def engine(settings):
    engine = make_engine(settings.database_url)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def redis():
    return FakeRedis()


async def create_user(
    session_factory,
    *,
    email: str | None = None,
    role: str = "user",
    password: str = "secret123",
    is_active: bool = True,
) -> str:
    user_id = str(uuid.uuid4())
    email = email or f"{user_id[:8]}@example.com"
    async with session_factory() as session:
        await session.execute(
            text("""
                INSERT INTO users
                    (id, username, email, password_hash, full_name, phone, role, is_active)
                VALUES
                    (:id, :username, :email, :password_hash, :full_name, :phone, :role, :active)
            """),
            {
                "id": user_id,
                "username": email.split("@")[0],
                "email": email,
                "password_hash": hash_password(password, rounds=4),
                "full_name": "Test User",
                "phone": "081200000000",
                "role": role,
                "active": is_active,
            },
        )
        await session.commit()
    return user_id


async def create_product(
    session_factory,
    *,
    name: str = "Widget",
    price: Decimal | str = "100",
    stock: int = 5,
    is_active: bool = True,
) -> str:
    product_id = str(uuid.uuid4())
    async with session_factory() as session:
        await session.execute(
            text("""
                INSERT INTO products (id, name, price, stock, is_active)
                VALUES (:id, :name, :price, :stock, :active)
            """),
            {
                "id": product_id,
                "name": name,
                "price": str(price),
                "stock": stock,
                "active": is_active,
            },
        )
        await session.commit()
    return product_id


async def stock_of(session_factory, product_id: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            text("SELECT stock FROM products WHERE id = :id"), {"id": product_id}
        )
        return result.scalar_one()
