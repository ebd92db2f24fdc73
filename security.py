from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from passlib.context import CryptContext

from config import BCRYPT_ROUNDS, JWT_ALG, JWT_SECRET, TOKEN_EXPIRE_MINUTES
from errors import InvalidToken

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    # Unknown accounts still pay for a hash so timing does not leak which emails exist
    if not password_hash:
        pwd_context.dummy_verify()
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user_id: str, expires_minutes: int = TOKEN_EXPIRE_MINUTES) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode({"id": user_id, "exp": expire}, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> str:
    """Return the user id the token was issued for."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise InvalidToken()
    user_id = payload.get("id")
    if not user_id:
        raise InvalidToken()
    return user_id


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidToken("Missing Authorization header")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise InvalidToken("Invalid Authorization header")
    return parts[1]
