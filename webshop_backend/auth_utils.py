# webshop_backend/auth_utils.py
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from dotenv import load_dotenv

from webshop_backend.errors import AuthenticationError
from webshop_backend.owners import CartOwner

load_dotenv()

SECRET_KEY = os.getenv("WEBSHOP_SECRET_KEY", "your_secret_key")
ALGORITHM = os.getenv("WEBSHOP_JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("WEBSHOP_TOKEN_EXPIRE_MINUTES", "30"))
TOKEN_COOKIE = "access_token"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Создает JWT токен с указанным временем истечения."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> int:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    user_id = payload.get("id")
    if user_id is None:
        raise AuthenticationError("Invalid token")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token")


def resolve_owner(token: Optional[str]) -> CartOwner:
    """No token means the shared anonymous cart; a bad token is an error."""
    if not token:
        return CartOwner.anonymous()
    return CartOwner.for_user(verify_token(token))
