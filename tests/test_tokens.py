import time

import jwt
import pytest

from conftest import TEST_SECRET
from shop.auth.tokens import Claims, TokenService, bearer_token
from shop.config import Settings
from shop.errors import ErrorKind, Failure


def _tamper(segment: str) -> str:
    i = len(segment) // 2
    replacement = "A" if segment[i] != "A" else "B"
    return segment[:i] + replacement + segment[i + 1:]


def test_issue_and_verify_round_trip(tokens):
    token = tokens.issue("user-1", "a@example.com", "admin")

    claims = tokens.verify(token)

    assert isinstance(claims, Claims)
    assert claims.user_id == "user-1"
    assert claims.email == "a@example.com"
    assert claims.role == "admin"
    assert claims.is_admin
    assert claims.expires_at - claims.issued_at == 3600


def test_payload_shape(tokens):
    token = tokens.issue("user-1", "a@example.com")
    payload = jwt.decode(token, TEST_SECRET, algorithms=["HS256"], issuer="shop-api")

    assert payload["data"] == {"user_id": "user-1", "email": "a@example.com", "role": "user"}
    assert payload["iss"] == "shop-api"


def test_expired_token(tokens):
    token = tokens.issue("user-1", "a@example.com", now=time.time() - 7200)

    result = tokens.verify(token)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.AUTH
    assert result.code == "expired"


def test_tampered_signature(tokens):
    header, payload, signature = tokens.issue("user-1", "a@example.com").split(".")

    result = tokens.verify(".".join([header, payload, _tamper(signature)]))

    assert result.code == "bad_signature"


def test_tampered_last_signature_character(tokens):
    header, payload, signature = tokens.issue("user-1", "a@example.com").split(".")
    last = "w" if signature[-1] in "ABCD" else "A"

    result = tokens.verify(".".join([header, payload, signature[:-1] + last]))

    assert result.code == "bad_signature"


def test_extended_signature_segment(tokens):
    header, payload, signature = tokens.issue("user-1", "a@example.com").split(".")

    result = tokens.verify(".".join([header, payload, signature + "A"]))

    assert result.code == "bad_signature"


def test_undecodable_header_is_bad_format(tokens):
    _, payload, signature = tokens.issue("user-1", "a@example.com").split(".")

    result = tokens.verify(".".join(["abc", payload, signature]))

    assert result.code == "bad_format"


def test_tampered_payload(tokens):
    header, payload, signature = tokens.issue("user-1", "a@example.com").split(".")

    result = tokens.verify(".".join([header, _tamper(payload), signature]))

    assert isinstance(result, Failure)
    assert result.code == "bad_signature"


def test_wrong_secret(tokens, settings):
    other = TokenService(settings.model_copy(update={"token_secret": "x" * 48}))

    result = tokens.verify(other.issue("user-1", "a@example.com"))

    assert result.code == "bad_signature"


def test_other_algorithm_rejected(tokens):
    now = int(time.time())
    token = jwt.encode(
        {
            "iat": now,
            "exp": now + 60,
            "iss": "shop-api",
            "data": {"user_id": "u", "email": "e", "role": "admin"},
        },
        TEST_SECRET,
        algorithm="HS512",
    )

    result = tokens.verify(token)

    assert result.code == "bad_algorithm"


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
def test_malformed_token(tokens, token):
    result = tokens.verify(token)

    assert isinstance(result, Failure)
    assert result.code == "bad_format"


def test_missing_data_claim(tokens):
    now = int(time.time())
    token = jwt.encode({"iat": now, "exp": now + 60, "iss": "shop-api"}, TEST_SECRET)

    assert tokens.verify(token).code == "bad_format"


def test_refresh_keeps_claims_and_extends_expiry(tokens):
    old = tokens.issue("user-1", "a@example.com", "admin", now=time.time() - 600)

    new = tokens.refresh(old)

    claims = tokens.verify(new)
    assert claims.user_id == "user-1"
    assert claims.role == "admin"
    assert claims.expires_at > tokens.verify(old).expires_at


def test_refresh_requires_valid_token(tokens):
    expired = tokens.issue("user-1", "a@example.com", now=time.time() - 7200)

    assert tokens.refresh(expired).code == "expired"


def test_refresh_window(settings):
    service = TokenService(settings.model_copy(update={"token_refresh_window_seconds": 300}))
    token = service.issue("user-1", "a@example.com")

    assert service.refresh(token).code == "refresh_too_early"
    refreshed = service.refresh(token, now=time.time() + 3400)
    assert isinstance(refreshed, str)


def test_only_hs256_is_accepted():
    with pytest.raises(ValueError):
        Settings(database_url="sqlite+aiosqlite://", token_secret="s", token_algorithm="RS256")


def test_from_env_requires_secret():
    with pytest.raises(KeyError):
        Settings.from_env({"DATABASE_URL": "sqlite+aiosqlite://"})


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer abc.def.ghi", "abc.def.ghi"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer", None),
        (None, None),
    ],
)
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected
