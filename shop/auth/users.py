"""
Auth — 利用者ストア

認証に必要な最小限の利用者管理。パスワードのハッシュ化は保存処理に
隠さず、ここのサービス関数で明示的に行う。
"""

import logging
import uuid

import bcrypt
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ErrorKind, Failure

logger = logging.getLogger(__name__)

_USER_COLUMNS = "id, username, email, full_name, phone, role, is_active, oauth_provider"


class User(BaseModel):
    id: str
    username: str
    email: str
    full_name: str
    phone: str | None = None
    role: str = "user"
    is_active: bool = True
    oauth_provider: str | None = None


class Identity(BaseModel):
    """外部 ID プロバイダが返す不透明な利用者情報"""
    external_id: str
    email: str
    name: str


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode(), password_hash.encode())


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(
        text(f"SELECT {_USER_COLUMNS} FROM users WHERE id = :id AND deleted_at IS NULL"),
        {"id": user_id},
    )
    row = result.fetchone()
    return User.model_validate(dict(row._mapping)) if row else None


async def _find_by_email(session: AsyncSession, email: str):
    result = await session.execute(
        text(f"""
            SELECT {_USER_COLUMNS}, password_hash FROM users
            WHERE email = :email AND deleted_at IS NULL
        """),
        {"email": email},
    )
    return result.fetchone()


async def _insert_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    password_hash: str,
    full_name: str,
    phone: str | None = None,
    role: str = "user",
    oauth_provider: str | None = None,
    oauth_id: str | None = None,
) -> str:
    user_id = str(uuid.uuid4())
    await session.execute(
        text("""
            INSERT INTO users
                (id, username, email, password_hash, full_name, phone, role,
                 oauth_provider, oauth_id, is_active)
            VALUES
                (:id, :username, :email, :password_hash, :full_name, :phone, :role,
                 :oauth_provider, :oauth_id, :is_active)
        """),
        {
            "id": user_id,
            "username": username,
            "email": email,
            "password_hash": password_hash,
            "full_name": full_name,
            "phone": phone,
            "role": role,
            "oauth_provider": oauth_provider,
            "oauth_id": oauth_id,
            "is_active": True,
        },
    )
    return user_id


async def register(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    full_name: str,
    phone: str | None = None,
    rounds: int = 12,
) -> User | Failure:
    """利用者を登録する。email / username が使用済みなら conflict。"""
    try:
        user_id = await _insert_user(
            session,
            username=username,
            email=email,
            password_hash=hash_password(password, rounds),
            full_name=full_name,
            phone=phone,
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return Failure(ErrorKind.CONFLICT, "Email or username already exists")

    logger.info("Registered user %s", user_id)
    return await get_user(session, user_id)


async def authenticate(session: AsyncSession, email: str, password: str) -> User | Failure:
    row = await _find_by_email(session, email)
    if not row or not verify_password(password, row.password_hash):
        return Failure(ErrorKind.AUTH, "Invalid email or password", code="bad_credentials")
    if not row.is_active:
        return Failure(
            ErrorKind.FORBIDDEN, "Account is not active. Please contact administrator."
        )
    return User.model_validate({k: v for k, v in row._mapping.items() if k != "password_hash"})


async def sign_in_with_identity(
    session: AsyncSession,
    provider: str,
    identity: Identity,
    rounds: int = 12,
) -> User | Failure:
    """
    外部 ID プロバイダでのサインイン。

    1. provider + external_id で紐付け済みの利用者がいればそれを返す
    2. 同じ email がパスワード登録済み (provider なし) なら conflict
    3. どちらでもなければ provider に紐付けた利用者を新規作成する
    """
    result = await session.execute(
        text(f"""
            SELECT {_USER_COLUMNS} FROM users
            WHERE oauth_provider = :provider AND oauth_id = :oauth_id AND deleted_at IS NULL
        """),
        {"provider": provider, "oauth_id": identity.external_id},
    )
    row = result.fetchone()
    if row:
        return User.model_validate(dict(row._mapping))

    existing = await _find_by_email(session, identity.email)
    if existing and not existing.oauth_provider:
        return Failure(
            ErrorKind.CONFLICT,
            "Email already registered. Please login with email and password.",
        )
    if existing:
        return Failure(
            ErrorKind.CONFLICT,
            f"Email already linked to {existing.oauth_provider}",
        )

    try:
        user_id = await _insert_user(
            session,
            username=identity.email,
            email=identity.email,
            # ログインには使わないランダムなパスワード
            password_hash=hash_password(uuid.uuid4().hex, rounds),
            full_name=identity.name,
            oauth_provider=provider,
            oauth_id=identity.external_id,
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return Failure(ErrorKind.CONFLICT, "Email or username already exists")
    return await get_user(session, user_id)
