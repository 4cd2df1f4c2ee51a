"""One messaging session: connection state machine plus its conversation store.

State transitions::

    disconnected --connect()--> connecting --qr--> qr_ready --open--> connected
         ^                          |                  |                  |
         +---------- close ---------+------------------+------------------+
    error <-- connect() raised

A close with ``DisconnectReason.LOGGED_OUT`` deletes the session's storage and
never reconnects. Any other close schedules exactly one reconnect after
``Settings.reconnect_delay`` seconds.

Transport events go through a bounded queue and are applied by a single
consumer task, so store mutations from the transport are serialized. Each
transport instance gets its own sink tagged with a generation number; events
from a replaced transport are dropped.
"""

import asyncio
import base64
import contextlib
import functools
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from .config import Settings
from .content import (
    ButtonsContent,
    ContactContent,
    DocumentContent,
    ImageContent,
    LocationContent,
    MessageContent,
    TextContent,
)
from .core import Chat, Contact, Identity, Result, SentMessage, SessionStatus
from .exceptions import (
    ChateryError,
    NotConnectedError,
    TransportError,
    ValidationError,
)
from .jid import is_group_jid, jid_user, phone_to_jid, to_jid
from .storage import SessionStorage
from .store import ConversationStore
from .transport import (
    ConnectionUpdate,
    CredentialsUpdate,
    DisconnectReason,
    MessagesUpsert,
    Transport,
    TransportEvent,
    TransportFactory,
)

logger = logging.getLogger(__name__)

ChallengeRenderer = Callable[[str], str]


def render_challenge(payload: str) -> str:
    """Encode a pairing challenge as a data URI a client can turn into a QR code."""
    encoded = base64.b64encode(payload.encode("utf-8")).decode("ascii")
    return f"data:text/plain;base64,{encoded}"


def _iso(ts: Optional[int]) -> str:
    moment = datetime.fromtimestamp(ts, tz=timezone.utc) if ts else datetime.now(timezone.utc)
    return moment.isoformat()


def _vcard(name: str, phone: str) -> str:
    return (
        "BEGIN:VCARD\nVERSION:3.0\n"
        f"FN:{name}\n"
        f"TEL;type=CELL;type=VOICE;waid={phone}:+{phone}\n"
        "END:VCARD"
    )


def session_operation(func):
    """Fold ``ChateryError`` raised by an operation into a failed ``Result``."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except ChateryError as e:
            if not isinstance(e, NotConnectedError):
                logger.warning("[%s] %s failed: %s", self.session_id, func.__name__, e)
            return Result.fail(e)

    return wrapper


class Session:
    """A single messaging session and everything it owns."""

    def __init__(
        self,
        session_id: str,
        storage: SessionStorage,
        transport_factory: TransportFactory,
        settings: Settings | None = None,
        renderer: ChallengeRenderer = render_challenge,
    ):
        self.session_id = session_id
        self.storage = storage
        self.settings = settings or Settings()
        self.store = ConversationStore()
        self.status = SessionStatus.DISCONNECTED
        self.challenge: str | None = None
        self.identity: Identity | None = None
        self.transport: Transport | None = None
        self.reconnect_attempts = 0

        self._transport_factory = transport_factory
        self._renderer = renderer
        self._generation = 0
        self._restored = False
        self._closed = False
        self._slot_deleted = False
        self._events: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None
        self._snapshot_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._picture_fetches: dict[str, asyncio.Task] = {}
        self._picture_slots = asyncio.Semaphore(self.settings.backfill_limit)
        self._storage_writes: set[asyncio.Future] = set()

    @property
    def is_connected(self) -> bool:
        return self.status == SessionStatus.CONNECTED

    def info(self) -> dict:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "is_connected": self.is_connected,
            "phone_number": self.identity.phone_number if self.identity else None,
            "name": self.identity.name if self.identity else None,
            "qr_code": self.challenge,
            "store_stats": self.store.stats(),
        }

    # ==================== CONNECTION ====================

    async def connect(self) -> Result:
        """Start (or restart) the transport handshake.

        Never raises. A failure leaves the session in ``error``; retrying is
        up to the caller.
        """
        self._closed = False
        self._slot_deleted = False
        self._cancel_reconnect()
        try:
            if not self._restored:
                await self._restore_snapshot()
                self._restored = True
            self._start_workers()

            self._generation += 1
            stale, self.transport = self.transport, None
            if stale is not None:
                await self._close_transport(stale)

            credentials = await asyncio.to_thread(self.storage.read_credentials, self.session_id)
            self._set_status(SessionStatus.CONNECTING)
            self.transport = self._transport_factory(
                self.session_id, credentials, self._sink(self._generation)
            )
            await self.transport.connect()
        except Exception as e:
            logger.exception("[%s] Error connecting", self.session_id)
            self._set_status(SessionStatus.ERROR)
            return Result.fail(TransportError(str(e)))

        return Result.ok("Initializing connection...")

    async def logout(self) -> Result:
        """Revoke credentials, stop background work and delete storage."""
        self._closed = True
        await self._stop_snapshot_timer()
        self._cancel_reconnect()

        self._generation += 1
        transport, self.transport = self.transport, None
        message = "Logged out successfully"
        if transport is not None:
            try:
                await transport.logout()
            except Exception as e:
                logger.warning("[%s] Remote logout failed: %s", self.session_id, e)
                message = f"Logged out locally; remote logout failed: {e}"
                await self._close_transport(transport)

        await self._stop_consumer()
        await self._forget_account()
        self._set_status(SessionStatus.DISCONNECTED)
        return Result.ok(message)

    async def close(self) -> None:
        """Shut down without logging out: flush the snapshot and drop the transport."""
        self._closed = True
        self._cancel_reconnect()
        await self._stop_snapshot_timer()
        if self._restored:
            await self.flush_snapshot()

        self._generation += 1
        transport, self.transport = self.transport, None
        if transport is not None:
            await self._close_transport(transport)
        await self._stop_consumer()
        self._set_status(SessionStatus.DISCONNECTED)

    async def wait_idle(self) -> None:
        """Wait until every queued transport event has been applied."""
        if self._events is not None:
            await self._events.join()

    async def flush_snapshot(self) -> bool:
        """Write the store snapshot now. Failures are logged, never raised."""
        await self._storage_idle()
        if self._slot_deleted:
            return False
        try:
            await self._storage_write(self._write_snapshot)
        except Exception as e:
            logger.warning("[%s] Could not save store snapshot: %s", self.session_id, e)
            return False
        return True

    def _write_snapshot(self) -> None:
        self.storage.write_snapshot(self.session_id, self.store.snapshot())

    async def _storage_write(self, func, *args) -> None:
        """Run a blocking storage write in a worker thread.

        The write is shielded: cancelling the caller does not stop the thread,
        so the future stays in ``_storage_writes`` until the thread finishes
        and slot deletion can wait for it.
        """
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._storage_writes.add(future)
        future.add_done_callback(self._storage_write_done)
        await asyncio.shield(future)

    def _storage_write_done(self, future: asyncio.Future) -> None:
        self._storage_writes.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug("[%s] Storage write failed: %s", self.session_id, future.exception())

    async def _storage_idle(self) -> None:
        while self._storage_writes:
            await asyncio.wait(set(self._storage_writes))

    async def _restore_snapshot(self) -> None:
        try:
            data = await asyncio.to_thread(self.storage.read_snapshot, self.session_id)
            if data:
                self.store.restore(data)
                logger.info("[%s] Store data loaded from snapshot", self.session_id)
        except Exception as e:
            logger.warning("[%s] Could not load store snapshot, starting empty: %s", self.session_id, e)
            self.store = ConversationStore()

    async def _forget_account(self) -> None:
        """Delete the storage slot and drop the cached state that belonged to it.

        Writes already in flight finish first; none start afterwards.
        """
        self._slot_deleted = True
        await self._storage_idle()
        await asyncio.to_thread(self.storage.delete, self.session_id)
        self.store = ConversationStore()
        self._restored = False
        self.identity = None

    def _set_status(self, status: SessionStatus) -> None:
        if status != SessionStatus.QR_READY:
            self.challenge = None
        self.status = status

    # ==================== BACKGROUND WORK ====================

    def _start_workers(self) -> None:
        if self._events is None:
            self._events = asyncio.Queue(maxsize=self.settings.event_queue_size)
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume_events())
        if self._snapshot_task is None or self._snapshot_task.done():
            self._snapshot_task = asyncio.create_task(self._snapshot_loop())

    def _sink(self, generation: int) -> Callable[[TransportEvent], Awaitable[None]]:
        async def emit(event: TransportEvent) -> None:
            if generation != self._generation or self._events is None:
                return
            await self._events.put((generation, event))

        return emit

    async def _consume_events(self) -> None:
        while True:
            generation, event = await self._events.get()
            try:
                if generation == self._generation:
                    await self._dispatch(event)
            except Exception:
                logger.exception("[%s] Failed to handle %s", self.session_id, type(event).__name__)
            finally:
                self._events.task_done()

    async def _dispatch(self, event: TransportEvent) -> None:
        if isinstance(event, ConnectionUpdate):
            await self._on_connection_update(event)
        elif isinstance(event, CredentialsUpdate):
            if not (self._closed or self._slot_deleted):
                await self._storage_write(
                    self.storage.write_credentials, self.session_id, event.credentials
                )
        else:
            if isinstance(event, MessagesUpsert) and event.type == "notify":
                for message in event.messages:
                    if not message.from_me:
                        logger.info("[%s] New message from: %s", self.session_id, message.chat_id)
            self.store.apply(event)

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.snapshot_interval)
            await self.flush_snapshot()

    async def _stop_snapshot_timer(self) -> None:
        task, self._snapshot_task = self._snapshot_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _stop_consumer(self) -> None:
        task, self._consumer = self._consumer, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._events = None

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning("[%s] Error closing transport: %s", self.session_id, e)

    # ==================== CONNECTION EVENTS ====================

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            self._set_status(SessionStatus.QR_READY)
            self.challenge = self._renderer(update.qr)
            logger.info("[%s] QR code generated, waiting for pairing", self.session_id)

        if update.connection == "close":
            await self._on_close(update)
        elif update.connection == "open":
            self._on_open()
        elif update.connection == "connecting":
            logger.info("[%s] Connecting...", self.session_id)
            self._set_status(SessionStatus.CONNECTING)

    def _on_open(self) -> None:
        self._set_status(SessionStatus.CONNECTED)
        user = self.transport.user if self.transport else None
        if user is not None:
            self.identity = Identity(
                jid=user.jid,
                phone_number=user.phone_number or jid_user(user.jid),
                name=user.name or "Unknown",
            )
            logger.info(
                "[%s] Connected as: %s (%s)",
                self.session_id, self.identity.name, self.identity.phone_number,
            )
        else:
            logger.info("[%s] Connected", self.session_id)

    async def _on_close(self, update: ConnectionUpdate) -> None:
        logger.info("[%s] Connection closed: %s", self.session_id, update.error or update.status_code)
        self._set_status(SessionStatus.DISCONNECTED)
        self.transport = None

        if update.status_code == DisconnectReason.LOGGED_OUT:
            logger.info("[%s] Logged out", self.session_id)
            self._closed = True
            await self._stop_snapshot_timer()
            await self._forget_account()
            return

        if self._closed:
            return
        logger.info("[%s] Reconnecting in %ss", self.session_id, self.settings.reconnect_delay)
        self.reconnect_attempts += 1
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.settings.reconnect_delay)
        if self._closed:
            logger.info("[%s] Session closed, skipping reconnect", self.session_id)
            return
        result = await self.connect()
        if not result.success:
            logger.warning("[%s] Reconnect failed: %s", self.session_id, result.message)

    # ==================== HELPERS ====================

    def _require_connected(self) -> Transport:
        if self.transport is None or self.status != SessionStatus.CONNECTED:
            raise NotConnectedError("Session not connected")
        return self.transport

    async def _command(self, awaitable):
        """Await a transport command, reporting failures as ``TransportError``."""
        try:
            return await awaitable
        except ChateryError:
            raise
        except Exception as e:
            raise TransportError(str(e)) from e

    async def _best_effort(self, awaitable, default=None):
        """Await a transport query whose failure just means "unknown"."""
        try:
            return await awaitable
        except Exception as e:
            logger.debug("[%s] Optional lookup failed: %s", self.session_id, e)
            return default

    def _jid(self, phone: str) -> str:
        return phone_to_jid(phone, self.settings.country_code)

    # ==================== SEND MESSAGES ====================

    @session_operation
    async def send(self, to: str, content: MessageContent) -> Result:
        transport = self._require_connected()
        jid = self._jid(to)
        receipt = await self._command(transport.send_message(jid, content))
        sent = SentMessage(message_id=receipt.message_id, to=jid, timestamp=_iso(receipt.timestamp))
        return Result.ok("Message sent successfully", sent)

    async def send_text(self, to: str, text: str) -> Result:
        return await self.send(to, TextContent(text=text))

    async def send_image(self, to: str, image_url: str, caption: str = "") -> Result:
        return await self.send(to, ImageContent(url=image_url, caption=caption or None))

    async def send_document(
        self, to: str, document_url: str, filename: str, mimetype: str = "application/pdf"
    ) -> Result:
        return await self.send(
            to, DocumentContent(url=document_url, filename=filename, mimetype=mimetype)
        )

    async def send_location(self, to: str, latitude: float, longitude: float, name: str = "") -> Result:
        return await self.send(
            to, LocationContent(latitude=latitude, longitude=longitude, name=name or None)
        )

    async def send_contact(self, to: str, contact_name: str, contact_phone: str) -> Result:
        return await self.send(
            to, ContactContent(display_name=contact_name, vcard=_vcard(contact_name, contact_phone))
        )

    async def send_buttons(self, to: str, text: str, footer: str, buttons: list[str]) -> Result:
        return await self.send(to, ButtonsContent(text=text, footer=footer, buttons=list(buttons)))

    # ==================== CONTACT & PROFILE ====================

    @session_operation
    async def is_registered(self, phone: str) -> Result:
        transport = self._require_connected()
        jid = self._jid(phone)
        status = await self._command(transport.registration_status(jid_user(jid)))
        return Result.ok(data={"phone": phone, "is_registered": status.exists, "jid": status.jid})

    @session_operation
    async def profile_picture(self, phone: str) -> Result:
        transport = self._require_connected()
        jid = self._jid(phone)
        url = await self._best_effort(transport.profile_picture_url(jid))
        if url:
            self.store.set_profile_picture(jid, url)
        return Result.ok(data={"phone": phone, "profile_picture": url})

    @session_operation
    async def contact_info(self, phone: str) -> Result:
        transport = self._require_connected()
        jid = self._jid(phone)
        picture, about, registration = await asyncio.gather(
            self._best_effort(transport.profile_picture_url(jid)),
            self._best_effort(transport.fetch_status(jid)),
            self._best_effort(transport.registration_status(jid_user(jid))),
        )
        return Result.ok(data={
            "phone": phone,
            "jid": jid,
            "is_registered": bool(registration and registration.exists),
            "profile_picture": picture,
            "status": about,
        })

    # ==================== GROUPS ====================

    @session_operation
    async def groups(self) -> Result:
        transport = self._require_connected()
        summaries = await self._command(transport.participating_groups())
        groups = [
            {
                "id": g.id,
                "name": g.subject,
                "is_group": True,
                "owner": g.owner,
                "creation": g.creation,
                "participants_count": len(g.participants),
                "description": g.description,
            }
            for g in summaries
        ]
        return Result.ok(data={"groups": groups, "total_groups": len(groups)})

    @session_operation
    async def group_metadata(self, group_id: str) -> Result:
        transport = self._require_connected()
        jid = to_jid(group_id, is_group=True, country_code=self.settings.country_code)
        metadata = await self._command(transport.group_metadata(jid))
        return Result.ok(data={
            "id": metadata.id,
            "name": metadata.subject,
            "owner": metadata.owner,
            "creation": metadata.creation,
            "description": metadata.description,
            "description_id": metadata.description_id,
            "participants": [
                {"id": p.id, "admin": p.admin, "phone": jid_user(p.id)}
                for p in metadata.participants
            ],
            "participants_count": len(metadata.participants),
        })

    # ==================== CHAT HISTORY ====================

    @session_operation
    async def chats_overview(self, limit: int = 50, offset: int = 0, type_filter: str = "all") -> Result:
        self._require_connected()
        try:
            page = self.store.overview(limit, offset, type_filter)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        await self._backfill_pictures(page.items)
        return Result.ok(data=page)

    @session_operation
    async def contacts(self, limit: int = 100, offset: int = 0, search: str = "") -> Result:
        self._require_connected()
        try:
            page = self.store.contacts(limit, offset, search)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        await self._backfill_pictures(page.items)
        return Result.ok(data=page)

    @session_operation
    async def chat_messages(self, chat_id: str, limit: int = 50, cursor: str | None = None) -> Result:
        transport = self._require_connected()
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        jid = to_jid(chat_id, country_code=self.settings.country_code)

        if not self.store.has_messages(jid):
            history = await self._best_effort(
                transport.fetch_message_history(jid, limit, cursor), default=[]
            )
            if history:
                self.store.append_messages(jid, history)
                logger.info("[%s] Loaded %d messages from history for %s", self.session_id, len(history), jid)

        return Result.ok(data=self.store.messages(jid, limit, cursor))

    @session_operation
    async def chat_info(self, chat_id: str) -> Result:
        transport = self._require_connected()
        jid = to_jid(chat_id, country_code=self.settings.country_code)
        picture = await self._best_effort(transport.profile_picture_url(jid))
        if picture:
            self.store.set_profile_picture(jid, picture)

        if is_group_jid(jid):
            try:
                metadata = await self._command(transport.group_metadata(jid))
            except TransportError as e:
                raise TransportError(f"Failed to get group info: {e}") from e
            return Result.ok(data={
                "id": jid,
                "name": metadata.subject,
                "is_group": True,
                "profile_picture": picture,
                "owner": metadata.owner,
                "owner_phone": jid_user(metadata.owner) if metadata.owner else None,
                "creation": metadata.creation,
                "description": metadata.description,
                "participants": [
                    {
                        "id": p.id,
                        "phone": jid_user(p.id),
                        "is_admin": p.admin in ("admin", "superadmin"),
                        "is_super_admin": p.admin == "superadmin",
                    }
                    for p in metadata.participants
                ],
                "participants_count": len(metadata.participants),
            })

        phone = jid_user(jid)
        about, registration = await asyncio.gather(
            self._best_effort(transport.fetch_status(jid)),
            self._best_effort(transport.registration_status(phone)),
        )
        chat = self.store.get_chat(jid)
        contact = self.store.get_contact(jid)
        name = (chat.name if chat else None) or (contact.display_name if contact else None) or None
        return Result.ok(data={
            "id": jid,
            "phone": phone,
            "name": name,
            "is_group": False,
            "profile_picture": picture,
            "status": about,
            "is_registered": bool(registration and registration.exists),
        })

    # ==================== PROFILE PICTURE BACKFILL ====================

    async def _backfill_pictures(self, records: list[Chat] | list[Contact]) -> None:
        """Fetch missing pictures for a page of records.

        Waits up to ``backfill_wait`` seconds; records whose fetch finished
        in time are updated in place, the rest land in the store when their
        fetch completes and show up on the next query.
        """
        missing = [r for r in records if not r.profile_picture][: self.settings.backfill_limit]
        if not missing or self.transport is None:
            return

        tasks = [self._picture_fetch(self.transport, r.id) for r in missing]
        done, _ = await asyncio.wait(tasks, timeout=self.settings.backfill_wait)
        for record, task in zip(missing, tasks):
            if task in done and not task.cancelled() and task.result():
                record.profile_picture = task.result()

    def _picture_fetch(self, transport: Transport, jid: str) -> asyncio.Task:
        task = self._picture_fetches.get(jid)
        if task is None:
            task = asyncio.create_task(self._fetch_picture(transport, jid))
            self._picture_fetches[jid] = task
            task.add_done_callback(lambda _: self._picture_fetches.pop(jid, None))
        return task

    async def _fetch_picture(self, transport: Transport, jid: str) -> str | None:
        async with self._picture_slots:
            try:
                url = await transport.profile_picture_url(jid)
            except Exception as e:
                logger.debug("[%s] No profile picture for %s: %s", self.session_id, jid, e)
                return None
        if url:
            self.store.set_profile_picture(jid, url)
        return url
