"""Core data models for chatery."""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

if TYPE_CHECKING:
    from .content import MessageContent

T = TypeVar("T")


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class Identity:
    """The account a session is authenticated as."""

    jid: str
    phone_number: str
    name: str = "Unknown"


@dataclass
class LastMessagePreview:
    """Short summary of a chat's most recent message."""

    type: str
    text: Optional[str]
    timestamp: int
    from_me: bool = False
    sender: Optional[str] = None


@dataclass
class Chat:
    """A personal or group conversation."""

    id: str  # "62811...@s.whatsapp.net" or "1203...@g.us"
    name: Optional[str] = None
    is_group: bool = False
    unread_count: int = 0
    last_activity: int = 0  # unix seconds
    last_message: Optional[LastMessagePreview] = None
    profile_picture: Optional[str] = None


@dataclass
class Contact:
    id: str
    name: Optional[str] = None
    notify: Optional[str] = None  # push name the contact chose
    profile_picture: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.notify or ""


@dataclass
class QuotedMessage:
    id: str
    sender: Optional[str] = None


@dataclass
class Message:
    """A message within a chat. ``None`` fields mean "not provided"."""

    id: str
    chat_id: str
    from_me: Optional[bool] = None
    sender: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None
    content: Optional["MessageContent"] = None
    quoted: Optional[QuotedMessage] = None


@dataclass
class Page(Generic[T]):
    """One offset-paginated slice of a sorted collection."""

    items: list[T]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


@dataclass
class MessagePage:
    """Newest-first window of a chat's messages."""

    chat_id: str
    messages: list[Message]
    limit: int
    cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        # Approximation: a page that ends exactly at the oldest message still
        # reports more.
        return len(self.messages) == self.limit


@dataclass
class Participant:
    id: str
    admin: Optional[str] = None  # "admin" | "superadmin" | None


@dataclass
class GroupMetadata:
    id: str
    subject: str
    owner: Optional[str] = None
    creation: Optional[int] = None
    description: Optional[str] = None
    description_id: Optional[str] = None
    participants: list[Participant] = field(default_factory=list)


@dataclass
class RegistrationStatus:
    exists: bool
    jid: Optional[str] = None


@dataclass
class SentMessage:
    message_id: str
    to: str
    timestamp: str  # ISO 8601


@dataclass
class Result:
    """Uniform outcome of a session-level operation."""

    success: bool
    message: str = ""
    data: Any = None
    error: Optional[str] = None  # ChateryError.code when success is False

    @classmethod
    def ok(cls, message: str = "", data: Any = None) -> "Result":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error, data: Any = None) -> "Result":
        return cls(success=False, message=str(error), data=data, error=error.code)
