"""Message content variants and wire-message parsing.

Every message carries exactly one content variant. Variants are plain
dataclasses tagged by a ``type`` class attribute; ``CONTENT_TYPES`` maps the
tag back to the class so the set stays closed.

Transport adapters receive Baileys-shaped dicts::

    {
        "key": {"remoteJid": "...", "id": "...", "fromMe": False, "participant": "..."},
        "message": {"conversation": "hi"},
        "messageTimestamp": 1700000000,
        "pushName": "Budi",
    }

and turn them into ``Message`` objects with ``message_from_raw``.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, ClassVar, Optional, Union

from .core import LastMessagePreview, Message, QuotedMessage

PREVIEW_MAX_CHARS = 100


@dataclass
class TextContent:
    type: ClassVar[str] = "text"
    text: Optional[str] = None


@dataclass
class ImageContent:
    type: ClassVar[str] = "image"
    caption: Optional[str] = None
    mimetype: Optional[str] = None
    url: Optional[str] = None


@dataclass
class VideoContent:
    type: ClassVar[str] = "video"
    caption: Optional[str] = None
    mimetype: Optional[str] = None
    url: Optional[str] = None


@dataclass
class AudioContent:
    type: ClassVar[str] = "audio"
    mimetype: Optional[str] = None
    ptt: bool = False  # push-to-talk voice note
    url: Optional[str] = None


@dataclass
class DocumentContent:
    type: ClassVar[str] = "document"
    filename: Optional[str] = None
    mimetype: Optional[str] = None
    url: Optional[str] = None


@dataclass
class StickerContent:
    type: ClassVar[str] = "sticker"
    mimetype: Optional[str] = None


@dataclass
class LocationContent:
    type: ClassVar[str] = "location"
    latitude: float = 0.0
    longitude: float = 0.0
    name: Optional[str] = None
    address: Optional[str] = None


@dataclass
class ContactContent:
    type: ClassVar[str] = "contact"
    display_name: Optional[str] = None
    vcard: Optional[str] = None


@dataclass
class ContactsContent:
    type: ClassVar[str] = "contacts"
    contacts: list[ContactContent] = field(default_factory=list)


@dataclass
class ReactionContent:
    type: ClassVar[str] = "reaction"
    emoji: Optional[str] = None
    target_message_id: Optional[str] = None


@dataclass
class ButtonsContent:
    type: ClassVar[str] = "buttons"
    text: str = ""
    footer: str = ""
    buttons: list[str] = field(default_factory=list)  # labels, ids follow position


@dataclass
class ProtocolContent:
    type: ClassVar[str] = "protocol"
    kind: Optional[Union[int, str]] = None


@dataclass
class UnknownContent:
    type: ClassVar[str] = "unknown"


MessageContent = Union[
    TextContent,
    ImageContent,
    VideoContent,
    AudioContent,
    DocumentContent,
    StickerContent,
    LocationContent,
    ContactContent,
    ContactsContent,
    ReactionContent,
    ButtonsContent,
    ProtocolContent,
    UnknownContent,
]

CONTENT_TYPES: dict[str, type] = {
    cls.type: cls
    for cls in (
        TextContent,
        ImageContent,
        VideoContent,
        AudioContent,
        DocumentContent,
        StickerContent,
        LocationContent,
        ContactContent,
        ContactsContent,
        ReactionContent,
        ButtonsContent,
        ProtocolContent,
        UnknownContent,
    )
}


def content_to_dict(content: MessageContent) -> dict:
    return {"type": content.type, **asdict(content)}


def content_from_dict(data: dict) -> MessageContent:
    cls = CONTENT_TYPES.get(data.get("type", ""), UnknownContent)
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    if cls is ContactsContent:
        kwargs["contacts"] = [
            ContactContent(display_name=c.get("display_name"), vcard=c.get("vcard"))
            for c in kwargs.get("contacts") or []
        ]
    return cls(**kwargs)


# ── Wire parsing ─────────────────────────────────────────────────


def _text(body: Any) -> MessageContent:
    return TextContent(text=body)


def _extended_text(body: dict) -> MessageContent:
    return TextContent(text=body.get("text"))


def _image(body: dict) -> MessageContent:
    return ImageContent(
        caption=body.get("caption") or None,
        mimetype=body.get("mimetype") or None,
        url=body.get("url") or None,
    )


def _video(body: dict) -> MessageContent:
    return VideoContent(
        caption=body.get("caption") or None,
        mimetype=body.get("mimetype") or None,
        url=body.get("url") or None,
    )


def _audio(body: dict) -> MessageContent:
    return AudioContent(
        mimetype=body.get("mimetype") or None,
        ptt=bool(body.get("ptt")),
        url=body.get("url") or None,
    )


def _document(body: dict) -> MessageContent:
    return DocumentContent(
        filename=body.get("fileName") or None,
        mimetype=body.get("mimetype") or None,
        url=body.get("url") or None,
    )


def _sticker(body: dict) -> MessageContent:
    return StickerContent(mimetype=body.get("mimetype") or None)


def _location(body: dict) -> MessageContent:
    return LocationContent(
        latitude=body.get("degreesLatitude", 0.0),
        longitude=body.get("degreesLongitude", 0.0),
        name=body.get("name") or None,
        address=body.get("address") or None,
    )


def _contact(body: dict) -> MessageContent:
    return ContactContent(display_name=body.get("displayName"), vcard=body.get("vcard"))


def _contacts(body: dict) -> MessageContent:
    return ContactsContent(
        contacts=[
            ContactContent(display_name=c.get("displayName"), vcard=c.get("vcard"))
            for c in body.get("contacts") or []
        ]
    )


def _reaction(body: dict) -> MessageContent:
    return ReactionContent(
        emoji=body.get("text"),
        target_message_id=(body.get("key") or {}).get("id"),
    )


def _protocol(body: dict) -> MessageContent:
    return ProtocolContent(kind=body.get("type"))


# Order matters: the first key present in the wire message wins.
_WIRE_PARSERS: dict[str, Callable[[Any], MessageContent]] = {
    "conversation": _text,
    "extendedTextMessage": _extended_text,
    "imageMessage": _image,
    "videoMessage": _video,
    "audioMessage": _audio,
    "documentMessage": _document,
    "stickerMessage": _sticker,
    "locationMessage": _location,
    "contactMessage": _contact,
    "contactsArrayMessage": _contacts,
    "reactionMessage": _reaction,
    "protocolMessage": _protocol,
}


def parse_content(wire_message: Optional[dict]) -> MessageContent:
    """Map the body of a wire message to its content variant."""
    if not wire_message:
        return UnknownContent()
    for key, parser in _WIRE_PARSERS.items():
        body = wire_message.get(key)
        if body:
            return parser(body)
    return UnknownContent()


def _timestamp(value: Any) -> Optional[int]:
    # Long-encoded timestamps arrive as {"low": ..., "high": ...}.
    if isinstance(value, dict):
        value = value.get("low")
    if value is None:
        return None
    return int(value)


def message_from_raw(raw: dict) -> Optional[Message]:
    """Build a ``Message`` from a wire dict, or ``None`` if it has no key."""
    key = raw.get("key") or {}
    msg_id = key.get("id")
    chat_id = key.get("remoteJid")
    if not msg_id or not chat_id:
        return None

    wire_message = raw.get("message")
    quoted = None
    context = ((wire_message or {}).get("extendedTextMessage") or {}).get("contextInfo") or {}
    if context.get("quotedMessage") and context.get("stanzaId"):
        quoted = QuotedMessage(id=context["stanzaId"], sender=context.get("participant"))

    return Message(
        id=msg_id,
        chat_id=chat_id,
        from_me=bool(key.get("fromMe")),
        sender=key.get("participant") or chat_id,
        sender_name=raw.get("pushName") or None,
        timestamp=_timestamp(raw.get("messageTimestamp")),
        content=parse_content(wire_message) if wire_message else None,
        quoted=quoted,
    )


# ── Previews ─────────────────────────────────────────────────────


def _preview_text(content: MessageContent) -> Optional[str]:
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, ImageContent):
        return content.caption or "📷 Photo"
    if isinstance(content, VideoContent):
        return content.caption or "🎥 Video"
    if isinstance(content, AudioContent):
        return "🎤 Voice message" if content.ptt else "🎵 Audio"
    if isinstance(content, DocumentContent):
        return f"📄 {content.filename or 'Document'}"
    if isinstance(content, StickerContent):
        return "🏷️ Sticker"
    if isinstance(content, LocationContent):
        return "📍 Location"
    if isinstance(content, ContactContent):
        return f"👤 {content.display_name or 'Contact'}"
    if isinstance(content, ContactsContent):
        return f"👥 {len(content.contacts)} contacts"
    if isinstance(content, ReactionContent):
        return content.emoji or "👍"
    if isinstance(content, ButtonsContent):
        return content.text
    return None


def build_preview(message: Message) -> LastMessagePreview:
    """Summarise a message for the chat overview."""
    content = message.content or UnknownContent()
    text = _preview_text(content)
    if text and len(text) > PREVIEW_MAX_CHARS:
        text = text[:PREVIEW_MAX_CHARS] + "..."
    kind = "ptt" if isinstance(content, AudioContent) and content.ptt else content.type
    return LastMessagePreview(
        type=kind,
        text=text,
        timestamp=message.timestamp or 0,
        from_me=bool(message.from_me),
        sender=message.sender,
    )
