from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
import datetime
from typing import List, Literal, Optional


ChatCategory = Literal["Academic", "Visa", "Housing", "Jobs", "Social", "Sports", "Tech", "Research"]
Semester = Literal["Fall", "Spring", "Summer"]
MemberRole = Literal["admin", "moderator", "member"]
UserStatus = Literal["online", "away", "busy", "offline"]
# system messages are only ever written by the server
ClientMessageType = Literal["text", "image", "file", "announcement"]


class APIModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ---- users / auth ----

class RegisterIn(APIModel):
    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=6, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=100)
    university: Optional[str] = Field(default=None, max_length=100)


class Token(BaseModel):
    access_token: str
    token_type: str


class UserBasic(APIModel):
    id: int
    username: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None


class UserOut(UserBasic):
    university: Optional[str] = None
    status: UserStatus = "offline"
    last_seen: Optional[datetime.datetime] = None


# ---- chats / memberships ----

class ChatCreate(APIModel):
    name: str = Field(min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    category: ChatCategory
    university: Optional[str] = Field(default=None, max_length=100)
    semester: Optional[Semester] = None
    year: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    is_private: bool = False
    member_limit: Optional[int] = Field(default=None, ge=1, le=10000)


class ChatOut(APIModel):
    id: int
    name: str
    description: Optional[str] = None
    category: str
    university: Optional[str] = None
    semester: Optional[str] = None
    year: Optional[str] = None
    is_private: bool
    is_active: bool
    member_limit: int
    member_count: int
    last_message_at: Optional[datetime.datetime] = None
    created_by: int
    created_at: Optional[datetime.datetime] = None
    creator: Optional[UserBasic] = None


class MembershipOut(APIModel):
    chat_id: int
    user_id: int
    role: MemberRole
    joined_at: Optional[datetime.datetime] = None
    last_read_at: Optional[datetime.datetime] = None
    is_muted: bool
    is_active: bool


class MemberOut(APIModel):
    user: UserBasic
    role: MemberRole
    joined_at: Optional[datetime.datetime] = None
    is_muted: bool


class ChatDetailOut(ChatOut):
    members: List[MemberOut] = []
    user_membership: MembershipOut


class AddMemberRequest(APIModel):
    user_id: int


class MemberUpdate(APIModel):
    role: Optional[MemberRole] = None
    is_muted: Optional[bool] = None


class Pagination(APIModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


# ---- messages ----

class MessageCreate(APIModel):
    content: str
    message_type: ClientMessageType = "text"
    reply_to_id: Optional[int] = None
    # Files uploaded beforehand through /files/upload
    attachment_ids: List[int] = []
    # Client generated token, a retried send with the same token returns the original message
    client_message_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class MessageUpdate(APIModel):
    content: str


class AttachmentOut(APIModel):
    id: int
    filename: str
    url: str
    mime_type: str
    size_bytes: int


class ReplyPreview(APIModel):
    id: int
    content: str
    message_type: str
    sender_name: Optional[str] = None
    is_deleted: bool = False


class MessageOut(APIModel):
    id: int
    chat_id: int
    content: str
    message_type: str
    sender: UserBasic
    reply_to_id: Optional[int] = None
    reply_to: Optional[ReplyPreview] = None
    attachments: List[AttachmentOut] = []
    client_message_id: Optional[str] = None
    is_edited: bool = False
    edited_at: Optional[datetime.datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime


class MessagePageOut(APIModel):
    messages: List[MessageOut]
    has_more: bool
    oldest_message_id: Optional[int] = None
    newest_message_id: Optional[int] = None


class ChatSummaryOut(ChatOut):
    membership: MembershipOut
    last_message: Optional[MessageOut] = None
    unread_count: int = 0


class ChatListOut(APIModel):
    chats: List[ChatSummaryOut]
    pagination: Pagination


class DiscoverOut(APIModel):
    chats: List[ChatOut]
    pagination: Pagination


class UnreadCountOut(APIModel):
    chat_id: int
    unread_count: int


class ReadStateOut(APIModel):
    chat_id: int
    last_read_at: Optional[datetime.datetime] = None
