import datetime
from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from ..database import Base

CHAT_CATEGORIES = ("Academic", "Visa", "Housing", "Jobs", "Social", "Sports", "Tech", "Research")
SEMESTERS = ("Fall", "Spring", "Summer")


class Chat(Base):
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(Enum(*CHAT_CATEGORIES, name="chat_category_enum"), nullable=False, index=True)
    university = Column(String(100), nullable=True, index=True)
    semester = Column(Enum(*SEMESTERS, name="chat_semester_enum"), nullable=True)
    year = Column(String(4), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_private = Column(Boolean, default=False, nullable=False, index=True)
    member_limit = Column(Integer, default=500, nullable=False)
    # Kept equal to the number of active memberships, see memberships_controller
    member_count = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc))

    creator = relationship("User", foreign_keys=[created_by])
    memberships = relationship("ChatMember", back_populates="chat")
    messages = relationship("Message", back_populates="chat")
