# eatsome/auth.py
"""
Telegram Mini App authentication.

The mini app sends its raw `initData` query string; once the signature is
verified against the bot token we hand out a short-lived JWT that the REST
API accepts as a bearer token.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import parse_qsl

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .errors import EatsomeError

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"
INIT_DATA_MAX_AGE = 24 * 60 * 60


class AuthError(EatsomeError):
    pass


class WebAppUser(BaseModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: bool = False
    photo_url: Optional[str] = None


class TokenClaims(BaseModel):
    uid: int
    chat_id: int


def validate_init_data(
    init_data: str,
    bot_token: str,
    max_age: int = INIT_DATA_MAX_AGE,
    now: Optional[float] = None,
) -> WebAppUser:
    """Check the initData signature and age, return the Telegram user in it."""
    parsed = dict(parse_qsl(init_data, keep_blank_values=True))
    hash_received = parsed.pop("hash", None)
    if not hash_received:
        raise AuthError("missing hash in initData")

    data_check_string = "\n".join(f"{k}={v}" for k, v in sorted(parsed.items()))
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    hash_calculated = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()

    if not hmac.compare_digest(hash_calculated, hash_received):
        logger.warning("🔒 Invalid initData signature", received_hash=hash_received[:8] + "...")
        raise AuthError("invalid signature")

    try:
        auth_date = int(parsed.get("auth_date", "0"))
    except ValueError:
        raise AuthError("invalid auth_date")
    current = time.time() if now is None else now
    if current - auth_date > max_age:
        raise AuthError("initData expired")

    raw_user = parsed.get("user")
    if not raw_user:
        raise AuthError("missing user in initData")
    try:
        return WebAppUser.model_validate(json.loads(raw_user))
    except ValueError as e:
        raise AuthError(f"invalid user in initData: {e}") from e


def issue_token(user_id: int, chat_id: int, secret: str, ttl_hours: int = 24) -> str:
    payload = {
        "uid": user_id,
        "chat_id": chat_id,
        "exp": datetime.now(timezone.utc) + timedelta(hours=ttl_hours),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str) -> TokenClaims:
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as e:
        raise AuthError(str(e)) from e
    try:
        return TokenClaims.model_validate(payload)
    except ValueError as e:
        raise AuthError(f"invalid token claims: {e}") from e


bearer_scheme = HTTPBearer(auto_error=False)


def current_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> TokenClaims:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    settings = request.app.state.services.settings
    try:
        return decode_token(credentials.credentials, settings.jwt_secret)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


def current_user_id(claims: TokenClaims = Depends(current_claims)) -> int:
    return claims.uid
