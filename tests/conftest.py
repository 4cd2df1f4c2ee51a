"""Shared test fixtures for chatery."""

import asyncio

import pytest

from chatery.config import Settings
from chatery.core import GroupMetadata, Identity, Message, Participant, RegistrationStatus
from chatery.content import TextContent
from chatery.storage import MemorySessionStorage
from chatery.transport import (
    ConnectionUpdate,
    GroupSummary,
    SendReceipt,
    Transport,
)

OWN_JID = "6281200000000:7@s.whatsapp.net"


class FakeTransport(Transport):
    """In-process transport that records commands and lets tests push events."""

    def __init__(self, session_id, credentials, emit):
        self.session_id = session_id
        self.credentials = credentials
        self.emit = emit
        self.calls = []
        self.sent = []
        self.pictures = {}
        self.picture_delay = 0.0
        self.history = {}
        self.groups = []
        self.metadata = {}
        self.registered = set()
        self.statuses = {}
        self.connect_error = None
        self.send_error = None
        self.logout_error = None
        self.closed = False
        self.logged_out = False
        self._user = Identity(jid=OWN_JID, phone_number="", name="Tester")

    @property
    def user(self):
        return self._user

    async def connect(self):
        self.calls.append(("connect",))
        if self.connect_error:
            raise self.connect_error

    async def close(self):
        self.calls.append(("close",))
        self.closed = True

    async def logout(self):
        self.calls.append(("logout",))
        if self.logout_error:
            raise self.logout_error
        self.logged_out = True

    async def send_message(self, jid, content):
        self.calls.append(("send_message", jid))
        if self.send_error:
            raise self.send_error
        self.sent.append((jid, content))
        return SendReceipt(message_id=f"MSG{len(self.sent)}", timestamp=1700000000)

    async def profile_picture_url(self, jid):
        self.calls.append(("profile_picture_url", jid))
        if self.picture_delay:
            await asyncio.sleep(self.picture_delay)
        if jid not in self.pictures:
            raise LookupError("item-not-found")
        return self.pictures[jid]

    async def group_metadata(self, jid):
        self.calls.append(("group_metadata", jid))
        if jid not in self.metadata:
            raise LookupError("group not found")
        return self.metadata[jid]

    async def participating_groups(self):
        return list(self.groups)

    async def registration_status(self, phone):
        jid = f"{phone}@s.whatsapp.net"
        return RegistrationStatus(exists=phone in self.registered, jid=jid if phone in self.registered else None)

    async def fetch_status(self, jid):
        return self.statuses.get(jid)

    async def fetch_message_history(self, jid, limit, cursor=None):
        self.calls.append(("fetch_message_history", jid, limit, cursor))
        return list(self.history.get(jid, []))[-limit:]

    # Event helpers

    async def show_qr(self, payload="2@pairing-ref"):
        await self.emit(ConnectionUpdate(qr=payload))

    async def open(self):
        await self.emit(ConnectionUpdate(connection="open"))

    async def drop(self, status_code=428):
        await self.emit(ConnectionUpdate(connection="close", status_code=status_code, error="Connection Closed"))


class FakeTransportFactory:
    """Builds ``FakeTransport`` instances and keeps every one it built."""

    def __init__(self):
        self.instances = []
        self.setup = None  # optional callable applied to each new transport

    def __call__(self, session_id, credentials, emit):
        transport = FakeTransport(session_id, credentials, emit)
        if self.setup:
            self.setup(transport)
        self.instances.append(transport)
        return transport

    def for_session(self, session_id):
        return [t for t in self.instances if t.session_id == session_id]


def text_message(msg_id, chat_id, ts, text="hello", from_me=False, sender=None, sender_name=None):
    return Message(
        id=msg_id,
        chat_id=chat_id,
        from_me=from_me,
        sender=sender or chat_id,
        sender_name=sender_name,
        timestamp=ts,
        content=TextContent(text=text),
    )


def group_metadata(jid, subject="Project Team"):
    return GroupMetadata(
        id=jid,
        subject=subject,
        owner="6281111111111@s.whatsapp.net",
        creation=1690000000,
        description="Weekly sync",
        participants=[
            Participant(id="6281111111111@s.whatsapp.net", admin="superadmin"),
            Participant(id="6282222222222@s.whatsapp.net", admin="admin"),
            Participant(id="6283333333333@s.whatsapp.net"),
        ],
    )


def group_summary(jid, subject="Project Team"):
    return GroupSummary(id=jid, subject=subject, owner="6281111111111@s.whatsapp.net", participants=["a", "b"])


@pytest.fixture
def storage():
    return MemorySessionStorage()


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def settings():
    return Settings(
        reconnect_delay=0,
        snapshot_interval=3600,
        backfill_limit=20,
        backfill_wait=1.0,
        event_queue_size=100,
    )
