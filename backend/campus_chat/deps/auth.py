from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from jose import JWTError, jwt

from ..core import security as auth
from ..core.errors import AuthError
from ..controllers import users_controller
from .db import get_db


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def resolve_user(db: Session, token: str):
    """Turn a bearer token into an active user. Shared by REST and the websocket handshake."""
    if not token:
        raise AuthError("Authentication token required")
    try:
        payload = jwt.decode(token, auth.SECRET_KEY, algorithms=[auth.ALGORITHM])
    except JWTError:
        raise AuthError("Invalid authentication token")
    username = payload.get("sub")
    if username is None:
        raise AuthError("Invalid authentication token")
    user = users_controller.get_user_by_username(db, username=username)
    if user is None or not user.is_active:
        raise AuthError("User not found")
    return user


def get_current_user(db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)):
    return resolve_user(db, token)
