"""Authentication helpers and FastAPI security dependencies.

This module decodes JWT bearer tokens and exposes two dependencies that
resolve an explicit `CurrentUser` context for each request:

- `get_current_user` requires a valid token and raises 401 otherwise
- `get_optional_user` returns `None` for anonymous callers so read
  endpoints can degrade to anonymous defaults

Handlers receive the resolved user as a parameter; nothing reads
session state implicitly.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from .config import settings
from .database import get_session
from . import repositories

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    username: str


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def _resolve_user(token: str, session: Session) -> CurrentUser:
    payload = decode_token(token)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    user = repositories.UserRepository(session).get(user_id)
    if not user:
        raise HTTPException(status_code=401, detail='user not found')
    return CurrentUser(user_id=user.id, username=user.username)


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
                     session: Session = Depends(get_session)) -> CurrentUser:
    """FastAPI dependency that returns the authenticated user.

    Raises HTTPException(401) when the bearer token is missing, invalid
    or refers to an unknown user.
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail='Not authenticated')
    return _resolve_user(credentials.credentials, session)


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
                      session: Session = Depends(get_session)) -> Optional[CurrentUser]:
    """Like `get_current_user` but anonymous callers resolve to `None`.

    A token that is present but invalid is still rejected with 401.
    """
    if credentials is None:
        return None
    return _resolve_user(credentials.credentials, session)
