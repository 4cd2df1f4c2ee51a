"""Abstract transport boundary.

The wire protocol (encryption, pairing, framing) lives outside chatery. A
transport adapter implements ``Transport`` for commands and pushes
``TransportEvent`` objects into the coroutine it is handed at construction.
Adapters are built by a factory::

    def factory(session_id: str, credentials: dict | None, emit: EventSink) -> Transport

selected with ``CHATERY_TRANSPORT=package.module:factory``.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Awaitable, Callable, Optional, Union

from .content import MessageContent
from .core import GroupMetadata, Identity, Message, RegistrationStatus


class DisconnectReason(IntEnum):
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408  # alias of CONNECTION_LOST; the protocol reuses 408 for both
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411


# ── Events ───────────────────────────────────────────────────────


@dataclass
class ConnectionUpdate:
    connection: Optional[str] = None  # "connecting" | "open" | "close"
    qr: Optional[str] = None  # pairing challenge payload
    status_code: Optional[int] = None  # DisconnectReason on close
    error: Optional[str] = None


@dataclass
class CredentialsUpdate:
    credentials: dict


@dataclass
class ChatsUpsert:
    chats: list[dict]


@dataclass
class ContactsUpsert:
    contacts: list[dict]


@dataclass
class MessagesUpsert:
    messages: list[Message]
    type: str = "notify"  # "notify" for live delivery, "append" for history sync


@dataclass
class ProfilePictureUpdate:
    id: str
    url: Optional[str] = None


TransportEvent = Union[
    ConnectionUpdate,
    CredentialsUpdate,
    ChatsUpsert,
    ContactsUpsert,
    MessagesUpsert,
    ProfilePictureUpdate,
]

EventSink = Callable[[TransportEvent], Awaitable[None]]


# ── Commands ─────────────────────────────────────────────────────


@dataclass
class SendReceipt:
    message_id: str
    timestamp: Optional[int] = None


@dataclass
class GroupSummary:
    id: str
    subject: str
    owner: Optional[str] = None
    creation: Optional[int] = None
    description: Optional[str] = None
    participants: list[str] = field(default_factory=list)


class Transport(ABC):
    """One live protocol connection for one session."""

    @property
    @abstractmethod
    def user(self) -> Identity | None:
        """The authenticated account, once the connection is open."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Start the handshake. Progress arrives as ``ConnectionUpdate`` events."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Drop the connection without revoking credentials."""
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Revoke this device's credentials and close."""
        ...

    @abstractmethod
    async def send_message(self, jid: str, content: MessageContent) -> SendReceipt:
        ...

    @abstractmethod
    async def profile_picture_url(self, jid: str) -> str | None:
        ...

    @abstractmethod
    async def group_metadata(self, jid: str) -> GroupMetadata:
        ...

    @abstractmethod
    async def participating_groups(self) -> list[GroupSummary]:
        ...

    @abstractmethod
    async def registration_status(self, phone: str) -> RegistrationStatus:
        ...

    @abstractmethod
    async def fetch_status(self, jid: str) -> str | None:
        """Return the account's "about" text."""
        ...

    @abstractmethod
    async def fetch_message_history(
        self, jid: str, limit: int, cursor: str | None = None
    ) -> list[Message]:
        ...


TransportFactory = Callable[[str, Optional[dict], EventSink], Transport]


def load_transport_factory(path: str) -> TransportFactory:
    """Resolve ``package.module:callable`` to a transport factory."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Transport must be given as 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{path!r} is not callable")
    return factory
