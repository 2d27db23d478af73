from __future__ import annotations

import asyncio
import base64
import json
import time
from types import SimpleNamespace
from typing import Any, Dict

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from starlette.requests import Request

from chatfeed.auth import deps
from chatfeed.core.settings import S
from chatfeed.models import CurrentUser
from chatfeed.repositories.in_memory import InMemoryUserRepository

SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_request(headers: Dict[str, str] | None = None, users=None) -> Request:
    app = SimpleNamespace(state=SimpleNamespace(services=SimpleNamespace(users=users or InMemoryUserRepository())))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "scheme": "http",
        "server": ("testserver", 80),
        "app": app,
    }

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


def run_async(coro):
    return asyncio.run(coro)


def unsigned_jwt(claims: Dict[str, Any]) -> str:
    header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).decode().rstrip("=")
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{payload}."


def cognito_token(**overrides: Any) -> str:
    now = int(time.time())
    claims = {
        "sub": "alice",
        "iss": deps._issuer(),
        "client_id": "client",
        "token_use": "access",
        "iat": now,
        "exp": now + 300,
    }
    claims.update(overrides)
    return jwt.encode(claims, SIGNING_KEY, algorithm="RS256", headers={"kid": "k1"})


def signing_keys() -> jwt.PyJWKSet:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(SIGNING_KEY.public_key()))
    jwk.update({"kid": "k1", "alg": "RS256", "use": "sig"})
    return jwt.PyJWKSet.from_dict({"keys": [jwk]})


@pytest.fixture(autouse=True)
def cognito_settings():
    names = ("cognito_user_pool_id", "cognito_app_client_id", "cognito_region", "cognito_expected_token_use")
    saved = [getattr(S, name) for name in names]
    object.__setattr__(S, "cognito_user_pool_id", "")
    object.__setattr__(S, "cognito_app_client_id", "")
    yield
    for name, value in zip(names, saved):
        object.__setattr__(S, name, value)


@pytest.fixture
def cognito(monkeypatch: pytest.MonkeyPatch) -> None:
    object.__setattr__(S, "cognito_user_pool_id", "pool")
    object.__setattr__(S, "cognito_app_client_id", "client")
    object.__setattr__(S, "cognito_region", "us-east-1")
    object.__setattr__(S, "cognito_expected_token_use", "access")
    monkeypatch.setattr(deps, "_signing_keys", signing_keys)


def test_requires_authorization_header() -> None:
    with pytest.raises(HTTPException) as exc:
        run_async(deps.authenticate(SimpleNamespace(headers={})))
    assert exc.value.status_code == 401


def test_rejects_non_bearer_scheme() -> None:
    with pytest.raises(HTTPException) as exc:
        run_async(deps.authenticate(SimpleNamespace(headers={"authorization": "Token abc"})))
    assert exc.value.status_code == 401


def test_fallback_accepts_plain_bearer_and_x_user_sub() -> None:
    assert run_async(deps.authenticate(build_request({"authorization": "Bearer user-1"}))) == "user-1"
    assert run_async(deps.authenticate(build_request({"x-user-sub": "user-2"}))) == "user-2"


def test_fallback_prefers_unsigned_jwt_subject() -> None:
    req = build_request({"authorization": f"Bearer {unsigned_jwt({'sub': 'jwt-user'})}"})
    assert run_async(deps.authenticate(req)) == "jwt-user"


def test_cognito_ignores_x_user_sub(cognito) -> None:
    with pytest.raises(HTTPException) as exc:
        run_async(deps.authenticate(build_request({"x-user-sub": "alice"})))
    assert exc.value.status_code == 401


def test_cognito_current_user_resolves_profile(cognito) -> None:
    users = InMemoryUserRepository()
    users.upsert("alice", "Alice A", "alice.png")
    req = build_request({"authorization": f"Bearer {cognito_token()}"}, users=users)

    user = run_async(deps.get_current_user(req))

    assert user == CurrentUser(user_id="alice", full_name="Alice A", profile_pic="alice.png")


def test_cognito_id_token_audience(cognito) -> None:
    object.__setattr__(S, "cognito_expected_token_use", "id")
    token = cognito_token(client_id=None, aud="client", token_use="id")
    assert run_async(deps.authenticate(build_request({"authorization": f"Bearer {token}"}))) == "alice"


@pytest.mark.parametrize(
    "overrides",
    [
        {"client_id": "someone-else"},
        {"token_use": "id"},
        {"iss": "https://example.com/other-pool"},
        {"exp": 1},
    ],
)
def test_cognito_rejects_bad_claims(cognito, overrides) -> None:
    token = cognito_token(**overrides)
    with pytest.raises(HTTPException) as exc:
        run_async(deps.authenticate(build_request({"authorization": f"Bearer {token}"})))
    assert exc.value.status_code == 401


def test_cognito_rejects_unknown_key_id(cognito) -> None:
    token = jwt.encode({"sub": "alice"}, SIGNING_KEY, algorithm="RS256", headers={"kid": "other"})
    with pytest.raises(HTTPException) as exc:
        run_async(deps.authenticate(build_request({"authorization": f"Bearer {token}"})))
    assert exc.value.detail == "Unknown Cognito key id"


def test_cognito_token_without_subject(cognito, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(deps, "verify_cognito_token", lambda token: {"token_use": "access"})
    with pytest.raises(HTTPException) as exc:
        run_async(deps.authenticate(build_request({"authorization": "Bearer token123"})))
    assert exc.value.detail == "Token missing subject"


def test_current_user_without_profile_uses_subject() -> None:
    user = run_async(deps.get_current_user(build_request({"x-user-sub": "ghost"})))
    assert user.full_name == "ghost"
    assert user.profile_pic is None
