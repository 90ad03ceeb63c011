from sqlalchemy.orm import Session

from ..core import security as auth
from ..core.errors import AuthError, ConflictError
from ..db import schemas
from .users_controller import get_user_by_username, create_user


def register_user(db: Session, body: schemas.RegisterIn):
    if get_user_by_username(db, body.username):
        raise ConflictError("Username already exists")
    user = create_user(db, body)
    token = auth.create_access_token({"sub": user.username})
    return {"access_token": token, "token_type": "bearer"}


def login(db: Session, username: str, password: str):
    user = get_user_by_username(db, username)
    if not user or not user.is_active or not auth.verify_password(password, user.password_hash):
        raise AuthError("Incorrect username or password")
    token = auth.create_access_token({"sub": user.username})
    return {"access_token": token, "token_type": "bearer"}
