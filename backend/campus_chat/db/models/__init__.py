from ..database import Base
from .user import User
from .chat import Chat
from .chat_member import ChatMember
from .message import Message
from .attachment import Attachment

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatMember",
    "Message",
    "Attachment",
]
