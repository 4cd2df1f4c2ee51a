"""In-memory conversation store.

Caches chats, contacts and messages for one session, built incrementally from
transport events and snapshotted to durable storage.

Overview queries are served from sorted indexes kept up to date on every
mutation, so a page is a slice rather than a sort of the whole cache. Each
index holds ``(-last_activity, chat_id)`` keys; ``bisect`` finds the old key
to drop and the new position to insert when a chat's activity moves.

All public methods take the store lock. The session's snapshot timer
serializes from a worker thread while the event loop keeps mutating.
"""

import copy
import json
import logging
import threading
from bisect import bisect_left, insort
from dataclasses import asdict, fields, replace
from typing import Iterable, Mapping, Optional

from .content import ProtocolContent, build_preview, content_from_dict, content_to_dict
from .core import Chat, Contact, LastMessagePreview, Message, MessagePage, Page, QuotedMessage
from .exceptions import PersistenceWarning
from .jid import is_group_jid
from .transport import (
    ChatsUpsert,
    ContactsUpsert,
    MessagesUpsert,
    ProfilePictureUpdate,
    TransportEvent,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

CHAT_FILTERS = ("all", "personal", "group")

_CHAT_FIELDS = ("name", "is_group", "unread_count", "profile_picture")
_CONTACT_FIELDS = ("name", "notify", "profile_picture")
_MESSAGE_FIELDS = tuple(f.name for f in fields(Message) if f.name not in ("id", "chat_id"))


def _chat_key(chat: Chat) -> tuple[int, str]:
    return (-chat.last_activity, chat.id)


def _contact_key(contact: Contact) -> tuple[int, str, str]:
    # Named contacts first, alphabetically.
    name = contact.display_name
    return (0 if name else 1, name.lower(), contact.id)


def _remove_sorted(index: list, key) -> None:
    pos = bisect_left(index, key)
    if pos < len(index) and index[pos] == key:
        del index[pos]


def _check_paging(limit: int, offset: int = 0) -> None:
    if limit < 1:
        raise ValueError("limit must be at least 1")
    if offset < 0:
        raise ValueError("offset must be non-negative")


class ConversationStore:
    """Chats, contacts and messages of one session."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._reset()

    def _reset(self) -> None:
        self._chats: dict[str, Chat] = {}
        self._contacts: dict[str, Contact] = {}
        self._messages: dict[str, list[Message]] = {}
        self._message_positions: dict[str, dict[str, int]] = {}
        self._chat_index: dict[str, list[tuple[int, str]]] = {f: [] for f in CHAT_FILTERS}
        self._contact_index: list[tuple[int, str, str]] = []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply(self, event: TransportEvent) -> bool:
        """Apply a transport data event. Returns False for non-data events."""
        if isinstance(event, ChatsUpsert):
            self.upsert_chats(event.chats)
        elif isinstance(event, ContactsUpsert):
            self.upsert_contacts(event.contacts)
        elif isinstance(event, MessagesUpsert):
            by_chat: dict[str, list[Message]] = {}
            for message in event.messages:
                by_chat.setdefault(message.chat_id, []).append(message)
            for chat_id, batch in by_chat.items():
                self.append_messages(chat_id, batch, live=event.type == "notify")
        elif isinstance(event, ProfilePictureUpdate):
            self.set_profile_picture(event.id, event.url)
        else:
            return False
        return True

    def upsert_chats(self, batch: Iterable[Mapping]) -> None:
        """Merge chat patches by id. Keys absent from a patch are left untouched."""
        with self._lock:
            for patch in batch:
                chat_id = patch.get("id")
                if not chat_id:
                    continue
                chat = self._chats.get(chat_id)
                if chat is None:
                    chat = Chat(id=chat_id, is_group=is_group_jid(chat_id))
                    self._chats[chat_id] = chat
                else:
                    self._unindex_chat(chat)
                for name in _CHAT_FIELDS:
                    if name in patch:
                        setattr(chat, name, patch[name])
                chat.unread_count = int(chat.unread_count or 0)
                activity = patch.get("last_activity")
                if activity is not None:
                    chat.last_activity = max(chat.last_activity, int(activity))
                self._index_chat(chat)

    def upsert_contacts(self, batch: Iterable[Mapping]) -> None:
        """Merge contact patches by id. Keys absent from a patch are left untouched."""
        with self._lock:
            for patch in batch:
                contact_id = patch.get("id")
                if not contact_id:
                    continue
                contact = self._contacts.get(contact_id)
                if contact is None:
                    contact = Contact(id=contact_id)
                    self._contacts[contact_id] = contact
                else:
                    _remove_sorted(self._contact_index, _contact_key(contact))
                for name in _CONTACT_FIELDS:
                    if name in patch:
                        setattr(contact, name, patch[name])
                insort(self._contact_index, _contact_key(contact))

    def append_messages(self, chat_id: str, batch: Iterable[Message], live: bool = False) -> None:
        """Append messages to a chat, merging any already stored with the same id.

        ``live`` marks real-time delivery: new messages from others then count
        towards the chat's unread total.
        """
        with self._lock:
            messages = self._messages.setdefault(chat_id, [])
            positions = self._message_positions.setdefault(chat_id, {})
            for incoming in batch:
                pos = positions.get(incoming.id)
                if pos is None:
                    stored = replace(copy.deepcopy(incoming), chat_id=chat_id)
                    positions[stored.id] = len(messages)
                    messages.append(stored)
                    is_new = True
                else:
                    stored = messages[pos]
                    for name in _MESSAGE_FIELDS:
                        value = getattr(incoming, name)
                        if value is not None:
                            setattr(stored, name, copy.deepcopy(value))
                    is_new = False
                self._touch_chat(chat_id, stored, count_unread=live and is_new and not stored.from_me)

    def set_profile_picture(self, jid: str, url: Optional[str]) -> None:
        """Cache a picture URL on whichever chat/contact holds ``jid``."""
        with self._lock:
            chat = self._chats.get(jid)
            if chat is not None:
                chat.profile_picture = url
            contact = self._contacts.get(jid)
            if contact is not None:
                contact.profile_picture = url

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def overview(self, limit: int = 50, offset: int = 0, type_filter: str = "all") -> Page[Chat]:
        """Chats by descending last activity, filtered by kind."""
        _check_paging(limit, offset)
        if type_filter not in CHAT_FILTERS:
            raise ValueError(f"Unknown chat filter: {type_filter}")
        with self._lock:
            index = self._chat_index[type_filter]
            items = [copy.deepcopy(self._chats[chat_id]) for _, chat_id in index[offset: offset + limit]]
            return Page(items=items, total=len(index), limit=limit, offset=offset)

    def contacts(self, limit: int = 100, offset: int = 0, search: str = "") -> Page[Contact]:
        """Contacts by name, optionally filtered by a case-insensitive substring."""
        _check_paging(limit, offset)
        term = (search or "").lower()
        with self._lock:
            ordered = (self._contacts[key[2]] for key in self._contact_index)
            if term:
                matches = [
                    c for c in ordered
                    if term in (c.name or "").lower() or term in (c.notify or "").lower()
                ]
            else:
                matches = list(ordered)
            items = [copy.deepcopy(c) for c in matches[offset: offset + limit]]
            return Page(items=items, total=len(matches), limit=limit, offset=offset)

    def messages(self, chat_id: str, limit: int = 50, cursor: Optional[str] = None) -> MessagePage:
        """Up to ``limit`` messages older than ``cursor``, newest first.

        An unknown cursor is ignored and the page starts at the newest message.
        """
        _check_paging(limit)
        with self._lock:
            messages = self._messages.get(chat_id, [])
            end = len(messages)
            if cursor is not None:
                pos = self._message_positions.get(chat_id, {}).get(cursor)
                if pos is not None:
                    end = pos
            window = [copy.deepcopy(m) for m in reversed(messages[max(0, end - limit): end])]
        return MessagePage(
            chat_id=chat_id,
            messages=window,
            limit=limit,
            cursor=window[-1].id if window else None,
        )

    def has_messages(self, chat_id: str) -> bool:
        with self._lock:
            return bool(self._messages.get(chat_id))

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            chat = self._chats.get(chat_id)
            return copy.deepcopy(chat) if chat else None

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self._lock:
            contact = self._contacts.get(contact_id)
            return copy.deepcopy(contact) if contact else None

    def stats(self) -> dict:
        with self._lock:
            return {
                "chats": len(self._chats),
                "contacts": len(self._contacts),
                "messages": sum(len(m) for m in self._messages.values()),
            }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> bytes:
        """Serialize a point-in-time copy of the cache."""
        with self._lock:
            payload = {
                "version": SNAPSHOT_VERSION,
                "chats": [asdict(c) for c in self._chats.values()],
                "contacts": [asdict(c) for c in self._contacts.values()],
                "messages": {
                    chat_id: [_message_to_dict(m) for m in messages]
                    for chat_id, messages in self._messages.items()
                },
            }
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    def restore(self, data: bytes) -> None:
        """Replace the whole cache with a snapshot.

        Raises ``PersistenceWarning`` if the snapshot cannot be decoded or
        holds values of the wrong type; the cache is left untouched in that
        case.
        """
        try:
            payload = json.loads(data)
            if payload.get("version") != SNAPSHOT_VERSION:
                raise ValueError(f"unsupported snapshot version {payload.get('version')!r}")
            chats = {c.id: c for c in (_chat_from_dict(d) for d in payload.get("chats", []))}
            contacts = {c.id: c for c in (_contact_from_dict(d) for d in payload.get("contacts", []))}
            messages = {
                chat_id: [_message_from_dict(d) for d in items]
                for chat_id, items in payload.get("messages", {}).items()
            }
            positions = {
                chat_id: {m.id: i for i, m in enumerate(items)}
                for chat_id, items in messages.items()
            }
            chat_index = {f: [] for f in CHAT_FILTERS}
            for chat in chats.values():
                key = _chat_key(chat)
                chat_index["all"].append(key)
                chat_index["group" if chat.is_group else "personal"].append(key)
            for index in chat_index.values():
                index.sort()
            contact_index = sorted(_contact_key(c) for c in contacts.values())
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise PersistenceWarning(f"Unreadable snapshot: {e}") from e

        with self._lock:
            self._chats = chats
            self._contacts = contacts
            self._messages = messages
            self._message_positions = positions
            self._chat_index = chat_index
            self._contact_index = contact_index
        logger.debug("Restored %d chats, %d contacts from snapshot", len(chats), len(contacts))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _index_chat(self, chat: Chat) -> None:
        key = _chat_key(chat)
        insort(self._chat_index["all"], key)
        insort(self._chat_index["group" if chat.is_group else "personal"], key)

    def _unindex_chat(self, chat: Chat) -> None:
        key = _chat_key(chat)
        _remove_sorted(self._chat_index["all"], key)
        _remove_sorted(self._chat_index["group"], key)
        _remove_sorted(self._chat_index["personal"], key)

    def _touch_chat(self, chat_id: str, message: Message, count_unread: bool) -> None:
        """Fold a stored message into its chat's preview and activity."""
        chat = self._chats.get(chat_id)
        if chat is None:
            chat = Chat(id=chat_id, is_group=is_group_jid(chat_id))
            self._chats[chat_id] = chat
        else:
            self._unindex_chat(chat)

        if not chat.name and not chat.is_group:
            contact = self._contacts.get(chat_id)
            if contact and contact.display_name:
                chat.name = contact.display_name
            elif message.sender_name and not message.from_me:
                chat.name = message.sender_name

        if count_unread:
            chat.unread_count += 1

        ts = message.timestamp
        if ts is not None and ts >= chat.last_activity and not isinstance(message.content, ProtocolContent):
            chat.last_activity = ts
            chat.last_message = build_preview(message)

        self._index_chat(chat)


def _optional_str(value) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    return value


def _chat_from_dict(data: dict) -> Chat:
    data = dict(data)
    preview = data.pop("last_message", None)
    chat = Chat(**data)
    chat.name = _optional_str(chat.name)
    chat.unread_count = int(chat.unread_count)
    chat.last_activity = int(chat.last_activity)
    if preview:
        chat.last_message = LastMessagePreview(**preview)
    return chat


def _contact_from_dict(data: dict) -> Contact:
    contact = Contact(**data)
    contact.name = _optional_str(contact.name)
    contact.notify = _optional_str(contact.notify)
    return contact


def _message_to_dict(message: Message) -> dict:
    data = asdict(message)
    data["content"] = content_to_dict(message.content) if message.content else None
    return data


def _message_from_dict(data: dict) -> Message:
    data = dict(data)
    if data.get("timestamp") is not None:
        data["timestamp"] = int(data["timestamp"])
    content = data.pop("content", None)
    quoted = data.pop("quoted", None)
    return Message(
        **data,
        content=content_from_dict(content) if content else None,
        quoted=QuotedMessage(**quoted) if quoted else None,
    )
