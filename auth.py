# auth.py

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from db import get_db
from models import User

logger = logging.getLogger("sharewheel.auth")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM  = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
RESET_TOKEN_EXPIRE_MINUTES  = 15
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

SESSION_COOKIE = "session"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    name: str = ""


def _pw_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]

def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(_pw_bytes(password), salt).decode("utf-8")

def verify_password(password: str, hashed_pw: str) -> bool:
    try:
        return bcrypt.checkpw(_pw_bytes(password), hashed_pw.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        purpose: str = "session") -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = dict(data)
    payload.update({
        "type": purpose,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    })
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

def create_reset_token(email: str) -> str:
    return create_access_token(
        {"sub": email},
        expires_delta=timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES),
        purpose="reset",
    )

def decode_token(token: str, purpose: str = "session") -> Optional[dict]:
    """Return the payload of a valid, unexpired token of the given purpose."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None
    if payload.get("type") != purpose or not payload.get("sub"):
        return None
    return payload


def extract_token(request: Request) -> Optional[str]:
    """Session token from the bearer header, else from the session cookie."""
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return request.cookies.get(SESSION_COOKIE)

def has_valid_session(request: Request) -> bool:
    token = extract_token(request)
    return bool(token) and decode_token(token) is not None


def get_current_user(
    request: Request,
    bearer: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    credentials_error = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )
    token = bearer or request.cookies.get(SESSION_COOKIE)
    if not token:
        raise credentials_error
    payload = decode_token(token)
    if payload is None:
        raise credentials_error

    user = db.query(User).filter_by(email=payload["sub"]).first()
    if user is None:
        logger.warning("Token for unknown user %s", payload["sub"])
        raise credentials_error
    return user
