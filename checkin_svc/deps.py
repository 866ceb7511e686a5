from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Depends, Header, HTTPException, Request, status
import logging
import time
import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.config import get_settings
from .core.redis import allow_request

logger = logging.getLogger(__name__)
settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

def select_jwk(jwks: Dict[str, Any], kid: str | None) -> Dict[str, Any]:
    """Pick the key named by the token's kid; a kid-less token needs a single-key set."""
    keys = jwks.get("keys") or []
    if kid is None:
        if len(keys) == 1:
            return keys[0]
        raise jwt.InvalidTokenError("token has no kid and the key set is ambiguous")
    for k in keys:
        if k.get("kid") == kid:
            return k
    raise jwt.InvalidTokenError(f"unknown signing key {kid!r}")

async def get_signing_key(token: str):
    from jwt.algorithms import RSAAlgorithm
    kid = jwt.get_unverified_header(token).get("kid")
    jwks = await fetch_jwks()
    return RSAAlgorithm.from_jwk(select_jwk(jwks, kid))

async def decode_bearer(authorization: str) -> Dict[str, Any]:
    token = authorization.split(" ", 1)[1].strip()
    try:
        key = await get_signing_key(token)
    except httpx.HTTPError:
        logger.error("could not fetch JWKS from %s", settings.auth_jwks_url)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        payload = jwt.decode(token, key=key, algorithms=["RS256"], options={"verify_aud": False})
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    return await decode_bearer(authorization)

async def get_optional_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any] | None:
    """Guests check in without a bearer token; a present but bad one is still rejected."""
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return await decode_bearer(authorization)

async def require_organiser(claims: dict = Depends(get_claims)) -> Dict[str, Any]:
    if claims.get("role") != "organiser":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organiser role required")
    return claims

async def rate_limited(request: Request) -> None:
    ip = request.client.host if request.client else "unknown"
    route_key = request.scope.get("route").path if request.scope.get("route") else request.url.path
    if not await allow_request(ip, route_key):
        raise HTTPException(status_code=429, detail="Too many requests")

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s
