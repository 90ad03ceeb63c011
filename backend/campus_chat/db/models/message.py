import datetime
from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base

MESSAGE_TYPES = ("text", "image", "file", "system", "announcement")
REDACTED_CONTENT = "[Message deleted]"


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    message_type = Column(Enum(*MESSAGE_TYPES, name="message_type_enum"), default="text", nullable=False)
    reply_to_id = Column(Integer, ForeignKey("messages.id"), nullable=True, index=True)
    client_message_id = Column(String(64), nullable=True)
    is_edited = Column(Boolean, default=False, nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc), nullable=False)

    chat = relationship("Chat", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id])
    reply_to = relationship("Message", remote_side=[id], foreign_keys=[reply_to_id])
    attachments = relationship("Attachment", back_populates="message", order_by="Attachment.id")

    __table_args__ = (
        Index("ix_messages_chat_created", "chat_id", "created_at", "id"),
        UniqueConstraint("chat_id", "sender_id", "client_message_id", name="uq_message_client_id"),
    )
