from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

import anyio
import jwt
import requests
from fastapi import HTTPException, Request

from chatfeed.core.settings import S
from chatfeed.models import CurrentUser

# Claims that may carry the caller id, in order of preference.
SUBJECT_CLAIMS = ("sub", "cognito:username", "username")


def _cognito_enabled() -> bool:
    return bool(S.cognito_user_pool_id and S.cognito_app_client_id)


def _issuer() -> str:
    return f"https://cognito-idp.{S.cognito_region or S.aws_region}.amazonaws.com/{S.cognito_user_pool_id}"


@lru_cache(maxsize=1)
def _signing_keys() -> jwt.PyJWKSet:
    resp = requests.get(f"{_issuer()}/.well-known/jwks.json", timeout=10)
    resp.raise_for_status()
    return jwt.PyJWKSet.from_dict(resp.json())


def verify_cognito_token(token: str) -> Dict[str, Any]:
    """
    Verify a Cognito id or access token and return its claims.

    Id tokens name the app client in ``aud``, access tokens in ``client_id``,
    so the audience is checked by hand after signature and issuer.
    """
    try:
        kid = jwt.get_unverified_header(token).get("kid", "")
        key = _signing_keys()[kid]
    except KeyError as exc:
        raise HTTPException(401, "Unknown Cognito key id") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc

    try:
        claims = jwt.decode(
            token,
            key.key,
            algorithms=["RS256"],
            issuer=_issuer(),
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc

    if (claims.get("aud") or claims.get("client_id")) != S.cognito_app_client_id:
        raise HTTPException(401, "Token issued for another client")
    expected_use = S.cognito_expected_token_use
    if expected_use and claims.get("token_use") != expected_use:
        raise HTTPException(401, "Unexpected token use")
    return claims


def _subject(claims: Dict[str, Any]) -> Optional[str]:
    for name in SUBJECT_CLAIMS:
        value = claims.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _unverified_subject(token: str) -> Optional[str]:
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return _subject(claims)


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def authenticate(request: Request) -> str:
    """
    Id of the caller.

    With Cognito configured only a verified bearer token is accepted. Without
    it (local runs, tests) the ``X-User-Sub`` header wins, then a bearer that
    is either an unsigned JWT or the bare user id.
    """
    if _cognito_enabled():
        token = extract_bearer_token(request.headers.get("authorization"))
        claims = await anyio.to_thread.run_sync(verify_cognito_token, token)
        user_id = _subject(claims)
        if not user_id:
            raise HTTPException(401, "Token missing subject")
        return user_id

    user_id = request.headers.get("x-user-sub")
    if user_id:
        return user_id
    token = extract_bearer_token(request.headers.get("authorization"))
    return _unverified_subject(token) or token


async def get_current_user(request: Request) -> CurrentUser:
    """The acting user, with the display data posts snapshot and feeds show."""
    user_id = await authenticate(request)
    users = request.app.state.services.users
    profile = await anyio.to_thread.run_sync(users.get, user_id) or {}
    return CurrentUser(
        user_id=user_id,
        full_name=profile.get("full_name") or user_id,
        profile_pic=profile.get("profile_pic"),
    )
