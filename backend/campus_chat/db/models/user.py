import datetime
from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, String
from sqlalchemy.orm import relationship
from ..database import Base

USER_STATUSES = ("online", "away", "busy", "offline")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    display_name = Column(String(100), nullable=True)
    university = Column(String(100), nullable=True)
    avatar = Column(String, nullable=True)
    status = Column(Enum(*USER_STATUSES, name="user_status_enum"), default="offline", nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc))

    memberships = relationship("ChatMember", back_populates="user")

    @property
    def name(self) -> str:
        return self.display_name or self.username
