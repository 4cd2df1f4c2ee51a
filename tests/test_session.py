"""Tests for the session state machine and its operations."""

import asyncio
import time

import pytest

from chatery.config import Settings
from chatery.content import ContactContent, LocationContent, TextContent
from chatery.core import SessionStatus
from chatery.session import Session, render_challenge
from chatery.storage import MemorySessionStorage
from chatery.transport import ChatsUpsert, CredentialsUpdate, DisconnectReason, MessagesUpsert

from conftest import group_metadata, group_summary, text_message

ALICE = "6281234567890@s.whatsapp.net"
GROUP = "120363000000000001@g.us"


async def connected_session(storage, factory, settings, session_id="s1"):
    session = Session(session_id, storage, factory, settings=settings)
    result = await session.connect()
    assert result.success
    await session.transport.open()
    await session.wait_idle()
    return session


async def settle_reconnect(session):
    await session.wait_idle()
    task = session._reconnect_task
    if task is not None:
        await task
    await session.wait_idle()


class TestConnection:

    @pytest.mark.asyncio
    async def test_connect_open(self, storage, factory, settings):
        session = Session("s1", storage, factory, settings=settings)
        assert session.status == SessionStatus.DISCONNECTED

        result = await session.connect()
        assert result.success
        assert session.status == SessionStatus.CONNECTING

        await session.transport.open()
        await session.wait_idle()
        assert session.status == SessionStatus.CONNECTED
        assert session.identity.phone_number == "6281200000000"
        assert session.identity.name == "Tester"
        await session.close()

    @pytest.mark.asyncio
    async def test_qr_challenge_cleared_on_open(self, storage, factory, settings):
        session = Session("s1", storage, factory, settings=settings)
        await session.connect()
        await session.transport.show_qr("2@ref,key")
        await session.wait_idle()

        assert session.status == SessionStatus.QR_READY
        assert session.challenge == render_challenge("2@ref,key")
        assert session.challenge.startswith("data:")

        await session.transport.open()
        await session.wait_idle()
        assert session.status == SessionStatus.CONNECTED
        assert session.challenge is None
        await session.close()

    @pytest.mark.asyncio
    async def test_custom_challenge_renderer(self, storage, factory, settings):
        session = Session("s1", storage, factory, settings=settings, renderer=lambda qr: f"qr:{qr}")
        await session.connect()
        await session.transport.show_qr("abc")
        await session.wait_idle()
        assert session.challenge == "qr:abc"
        await session.close()

    @pytest.mark.asyncio
    async def test_connect_failure_sets_error(self, storage, factory, settings):
        factory.setup = lambda t: setattr(t, "connect_error", RuntimeError("socket refused"))
        session = Session("s1", storage, factory, settings=settings)

        result = await session.connect()
        assert not result.success
        assert result.error == "transport"
        assert "socket refused" in result.message
        assert session.status == SessionStatus.ERROR
        await session.close()

    @pytest.mark.asyncio
    async def test_credentials_persisted(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        await session.transport.emit(CredentialsUpdate(credentials={"noiseKey": "abc"}))
        await session.wait_idle()
        assert storage.read_credentials("s1") == {"noiseKey": "abc"}

        await session.close()
        second = Session("s1", storage, factory, settings=settings)
        await second.connect()
        assert second.transport.credentials == {"noiseKey": "abc"}
        await second.close()

    @pytest.mark.asyncio
    async def test_events_from_replaced_transport_are_dropped(self, storage, factory, settings):
        session = Session("s1", storage, factory, settings=settings)
        await session.connect()
        stale = session.transport
        await session.connect()
        assert stale.closed

        await stale.open()
        await stale.emit(ChatsUpsert(chats=[{"id": ALICE, "name": "ghost"}]))
        await session.wait_idle()
        assert session.status == SessionStatus.CONNECTING
        assert session.store.get_chat(ALICE) is None
        await session.close()


class TestReconnect:

    @pytest.mark.asyncio
    async def test_unexpected_close_reconnects_once(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        await session.transport.drop(DisconnectReason.CONNECTION_CLOSED)
        await settle_reconnect(session)

        assert session.reconnect_attempts == 1
        assert len(factory.instances) == 2
        assert session.status == SessionStatus.CONNECTING
        await session.close()

    @pytest.mark.asyncio
    async def test_logged_out_close_removes_credentials(self, storage, factory, settings):
        storage.write_credentials("s1", {"me": "x"})
        session = await connected_session(storage, factory, settings)
        await session.transport.drop(DisconnectReason.LOGGED_OUT)
        await settle_reconnect(session)

        assert session.reconnect_attempts == 0
        assert len(factory.instances) == 1
        assert session.status == SessionStatus.DISCONNECTED
        assert storage.read_credentials("s1") is None
        assert "s1" not in storage.list_sessions()

        await session.close()
        assert "s1" not in storage.list_sessions()

    @pytest.mark.asyncio
    async def test_reconnect_after_logout_is_noop(self, storage, factory):
        settings = Settings(reconnect_delay=0.05, snapshot_interval=3600)
        session = await connected_session(storage, factory, settings)
        await session.transport.drop()
        await session.wait_idle()
        assert session.reconnect_attempts == 1

        await session.logout()
        await asyncio.sleep(0.1)
        assert len(factory.instances) == 1
        assert session.status == SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_does_not_reconnect(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        transport = session.transport
        await session.close()
        await transport.drop()
        await asyncio.sleep(0.01)
        assert len(factory.instances) == 1
        assert session.reconnect_attempts == 0


class TestLogout:

    @pytest.mark.asyncio
    async def test_logout_deletes_storage(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        storage.write_credentials("s1", {"me": "x"})
        transport = session.transport

        result = await session.logout()
        assert result.success
        assert transport.logged_out
        assert storage.list_sessions() == []
        assert session.identity is None
        assert session.status == SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_remote_logout_failure_still_cleans_up(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.logout_error = RuntimeError("Connection Closed")
        storage.write_credentials("s1", {"me": "x"})

        result = await session.logout()
        assert result.success
        assert "remote logout failed" in result.message
        assert storage.list_sessions() == []


class TestSnapshots:

    @pytest.mark.asyncio
    async def test_snapshot_timer_writes(self, storage, factory):
        settings = Settings(reconnect_delay=0, snapshot_interval=0.01)
        session = await connected_session(storage, factory, settings)
        await session.transport.emit(ChatsUpsert(chats=[{"id": ALICE, "name": "Alice"}]))
        await session.wait_idle()
        await asyncio.sleep(0.05)

        assert storage.read_snapshot("s1") is not None
        await session.close()

    @pytest.mark.asyncio
    async def test_store_restored_on_connect(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        await session.transport.emit(MessagesUpsert(messages=[text_message("m1", ALICE, 100)]))
        await session.wait_idle()
        await session.close()

        again = await connected_session(storage, factory, settings)
        result = await again.chat_messages(ALICE)
        assert [m.id for m in result.data.messages] == ["m1"]
        await again.close()

    @pytest.mark.asyncio
    async def test_snapshot_write_failure_is_tolerated(self, factory, settings):
        class BrokenStorage(MemorySessionStorage):
            def write_snapshot(self, session_id, data):
                raise OSError("disk full")

        session = await connected_session(BrokenStorage(), factory, settings)
        await session.transport.emit(ChatsUpsert(chats=[{"id": ALICE, "name": "Alice"}]))
        await session.wait_idle()

        assert await session.flush_snapshot() is False
        result = await session.chats_overview()
        assert result.success
        assert result.data.items[0].name == "Alice"
        await session.close()

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_ignored(self, storage, factory, settings):
        storage.write_snapshot("s1", b"{broken")
        session = await connected_session(storage, factory, settings)
        assert session.status == SessionStatus.CONNECTED
        assert session.store.stats() == {"chats": 0, "contacts": 0, "messages": 0}
        await session.close()

    @pytest.mark.asyncio
    async def test_type_corrupted_snapshot_is_ignored(self, storage, factory, settings):
        storage.write_snapshot(
            "s1",
            b'{"version": 1, "chats": [{"id": "a@s.whatsapp.net", "last_activity": null}],'
            b' "contacts": [], "messages": {}}',
        )
        session = await connected_session(storage, factory, settings)
        assert session.status == SessionStatus.CONNECTED
        assert session.store.stats() == {"chats": 0, "contacts": 0, "messages": 0}

        await session.transport.emit(ChatsUpsert(chats=[{"id": ALICE, "name": "Alice"}]))
        await session.wait_idle()
        result = await session.chats_overview()
        assert [c.id for c in result.data.items] == [ALICE]
        await session.close()


class SlowStorage(MemorySessionStorage):
    """Memory storage whose writes block their worker thread for a while."""

    delay = 0.3

    def write_snapshot(self, session_id, data):
        time.sleep(self.delay)
        super().write_snapshot(session_id, data)

    def write_credentials(self, session_id, credentials):
        time.sleep(self.delay)
        super().write_credentials(session_id, credentials)


class TestWritesDuringLogout:

    @pytest.mark.asyncio
    async def test_logout_waits_for_snapshot_write(self, factory):
        storage = SlowStorage()
        settings = Settings(reconnect_delay=0, snapshot_interval=0.05)
        session = await connected_session(storage, factory, settings)
        await asyncio.sleep(0.1)

        await session.logout()
        assert storage.list_sessions() == []
        await asyncio.sleep(SlowStorage.delay + 0.1)
        assert storage.list_sessions() == []

    @pytest.mark.asyncio
    async def test_logout_waits_for_credentials_write(self, factory, settings):
        storage = SlowStorage()
        session = await connected_session(storage, factory, settings)
        await session.transport.emit(CredentialsUpdate(credentials={"noiseKey": "abc"}))
        await asyncio.sleep(0.05)

        await session.logout()
        assert storage.list_sessions() == []
        await asyncio.sleep(SlowStorage.delay + 0.1)
        assert storage.read_credentials("s1") is None
        assert storage.list_sessions() == []

    @pytest.mark.asyncio
    async def test_terminal_close_waits_for_snapshot_write(self, factory):
        storage = SlowStorage()
        settings = Settings(reconnect_delay=0, snapshot_interval=0.05)
        session = await connected_session(storage, factory, settings)
        await asyncio.sleep(0.1)

        await session.transport.drop(DisconnectReason.LOGGED_OUT)
        await session.wait_idle()
        assert storage.list_sessions() == []
        await asyncio.sleep(SlowStorage.delay + 0.1)
        assert storage.list_sessions() == []
        await session.close()
        assert storage.list_sessions() == []


class TestOperations:

    @pytest.mark.asyncio
    async def test_not_connected_guard(self, storage, factory, settings):
        session = Session("s1", storage, factory, settings=settings)
        await session.connect()

        for result in (
            await session.send_text("0812", "hi"),
            await session.chats_overview(),
            await session.contacts(),
            await session.chat_messages(ALICE),
            await session.groups(),
        ):
            assert not result.success
            assert result.error == "not_connected"
            assert result.message == "Session not connected"
        assert factory.instances[0].sent == []
        await session.close()

    @pytest.mark.asyncio
    async def test_send_text_normalises_phone(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        result = await session.send_text("0812-3456-7890", "hello")

        assert result.success
        assert result.message == "Message sent successfully"
        assert result.data.to == "6281234567890@s.whatsapp.net"
        assert result.data.message_id == "MSG1"
        assert session.transport.sent == [(ALICE, TextContent(text="hello"))]
        await session.close()

    @pytest.mark.asyncio
    async def test_send_variants(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        await session.send_location(ALICE, -6.2, 106.8, "Jakarta")
        await session.send_contact(ALICE, "Budi", "628111")

        location, contact = [content for _, content in session.transport.sent]
        assert location == LocationContent(latitude=-6.2, longitude=106.8, name="Jakarta")
        assert isinstance(contact, ContactContent)
        assert "waid=628111" in contact.vcard
        await session.close()

    @pytest.mark.asyncio
    async def test_transport_failure_reported(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.send_error = RuntimeError("rate-overlimit")

        result = await session.send_text(ALICE, "hi")
        assert not result.success
        assert result.error == "transport"
        assert result.message == "rate-overlimit"
        await session.close()

    @pytest.mark.asyncio
    async def test_is_registered(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.registered.add("6281234567890")

        yes = await session.is_registered("081234567890")
        no = await session.is_registered("0899")
        assert yes.data["is_registered"] is True
        assert yes.data["jid"] == ALICE
        assert no.data["is_registered"] is False
        await session.close()

    @pytest.mark.asyncio
    async def test_contact_info(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.statuses[ALICE] = "Busy"
        session.transport.registered.add("6281234567890")

        result = await session.contact_info("6281234567890")
        assert result.data == {
            "phone": "6281234567890",
            "jid": ALICE,
            "is_registered": True,
            "profile_picture": None,
            "status": "Busy",
        }
        await session.close()

    @pytest.mark.asyncio
    async def test_groups(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.groups = [group_summary(GROUP)]
        session.transport.metadata[GROUP] = group_metadata(GROUP)

        listing = await session.groups()
        assert listing.data["total_groups"] == 1
        assert listing.data["groups"][0]["participants_count"] == 2

        meta = await session.group_metadata("120363000000000001")
        assert meta.data["name"] == "Project Team"
        assert meta.data["participants_count"] == 3

        missing = await session.group_metadata("999@g.us")
        assert missing.error == "transport"
        await session.close()

    @pytest.mark.asyncio
    async def test_chat_info_group_and_personal(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.metadata[GROUP] = group_metadata(GROUP)
        session.transport.pictures[GROUP] = "https://pps/group.jpg"
        session.store.upsert_chats([{"id": ALICE, "name": "Alice"}])

        group = await session.chat_info(GROUP)
        assert group.data["is_group"] is True
        assert group.data["profile_picture"] == "https://pps/group.jpg"
        admins = [p["phone"] for p in group.data["participants"] if p["is_admin"]]
        assert admins == ["6281111111111", "6282222222222"]

        personal = await session.chat_info(ALICE)
        assert personal.data["name"] == "Alice"
        assert personal.data["phone"] == "6281234567890"
        assert personal.data["is_registered"] is False
        await session.close()

    @pytest.mark.asyncio
    async def test_chat_messages_falls_back_to_history(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.transport.history[ALICE] = [text_message(f"h{i}", ALICE, 100 + i) for i in range(3)]

        result = await session.chat_messages("6281234567890", limit=2)
        assert [m.id for m in result.data.messages] == ["h2", "h1"]
        assert result.data.has_more is True

        # Served from the store now.
        await session.chat_messages(ALICE, limit=2, cursor="h1")
        fetches = [c for c in session.transport.calls if c[0] == "fetch_message_history"]
        assert len(fetches) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_invalid_paging_is_validation_error(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        result = await session.chats_overview(limit=0)
        assert result.error == "validation"
        result = await session.chats_overview(type_filter="broadcast")
        assert result.error == "validation"
        await session.close()


class TestBackfill:

    @pytest.mark.asyncio
    async def test_pictures_filled_in_response(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.store.upsert_chats([{"id": ALICE, "last_activity": 10}, {"id": GROUP, "last_activity": 5}])
        session.transport.pictures[ALICE] = "https://pps/alice.jpg"

        result = await session.chats_overview()
        pictures = {c.id: c.profile_picture for c in result.data.items}
        assert pictures == {ALICE: "https://pps/alice.jpg", GROUP: None}
        assert session.store.get_chat(ALICE).profile_picture == "https://pps/alice.jpg"
        await session.close()

    @pytest.mark.asyncio
    async def test_slow_fetch_lands_on_next_query(self, storage, factory):
        settings = Settings(snapshot_interval=3600, backfill_wait=0.01)
        session = await connected_session(storage, factory, settings)
        session.store.upsert_contacts([{"id": ALICE, "name": "Alice"}])
        session.transport.pictures[ALICE] = "https://pps/alice.jpg"
        session.transport.picture_delay = 0.05

        first = await session.contacts()
        assert first.data.items[0].profile_picture is None

        await asyncio.sleep(0.1)
        second = await session.contacts()
        assert second.data.items[0].profile_picture == "https://pps/alice.jpg"
        await session.close()

    @pytest.mark.asyncio
    async def test_backfill_is_capped(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.store.upsert_chats([{"id": f"62800{i}@s.whatsapp.net", "last_activity": i} for i in range(30)])

        await session.chats_overview(limit=30)
        fetched = [c for c in session.transport.calls if c[0] == "profile_picture_url"]
        assert len(fetched) == settings.backfill_limit
        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_queries_share_fetches(self, storage, factory, settings):
        session = await connected_session(storage, factory, settings)
        session.store.upsert_chats([{"id": ALICE, "last_activity": 1}])
        session.transport.pictures[ALICE] = "https://pps/alice.jpg"
        session.transport.picture_delay = 0.02

        first, second = await asyncio.gather(session.chats_overview(), session.chats_overview())
        assert first.data.items[0].profile_picture == "https://pps/alice.jpg"
        assert second.data.items[0].profile_picture == "https://pps/alice.jpg"
        fetched = [c for c in session.transport.calls if c[0] == "profile_picture_url"]
        assert len(fetched) == 1
        await session.close()
