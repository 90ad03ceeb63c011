import logging
from sqlalchemy.orm import Session
from typing import Optional

from ..core.errors import ValidationError
from ..core.security import get_password_hash
from ..core.timeutil import utcnow
from ..db import models, schemas
from ..db.models.user import USER_STATUSES

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id: int):
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()


def create_user(db: Session, user: schemas.RegisterIn):
    db_user = models.User(
        username=user.username,
        password_hash=get_password_hash(user.password),
        display_name=user.display_name,
        university=user.university,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def set_status(db: Session, user_id: int, status: str) -> Optional[models.User]:
    """Persist a presence status and stamp ``last_seen``."""
    if status not in USER_STATUSES:
        raise ValidationError("Invalid status")
    u = get_user(db, user_id)
    if not u:
        return None
    u.status = status
    u.last_seen = utcnow()
    db.commit()
    db.refresh(u)
    logger.info(f"Presence user_id={user_id} status={status}")
    return u
