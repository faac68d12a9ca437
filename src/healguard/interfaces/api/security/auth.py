from datetime import datetime, timedelta, timezone
from typing import Optional, Iterable

from jose import jwt
from passlib.context import CryptContext
from os import getenv

JWT_SECRET = getenv("JWT_SECRET", "change-me-please")
JWT_ALG = getenv("JWT_ALG", "HS256")
JWT_EXPIRE_MIN = int(getenv("JWT_EXPIRE_MIN", "720"))  # 12 hours

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def create_access_token(subject: str, roles: Optional[Iterable[str]] = None,
                        expires_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=expires_minutes if expires_minutes is not None else JWT_EXPIRE_MIN)
    payload = {
        "sub": subject,
        "roles": [r.upper() for r in (roles or [])],
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)

def decode_token(token: str) -> dict:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
