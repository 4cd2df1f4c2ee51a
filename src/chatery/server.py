"""FastAPI service layer for chatery."""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import __version__
from .config import Settings, get_sessions_path, get_transport_path
from .content import content_to_dict
from .core import Chat, Contact, Message, MessagePage, Page, Result, SentMessage
from .jid import is_group_jid, jid_user
from .registry import SessionRegistry
from .session import Session
from .storage import FileSessionStorage
from .transport import load_transport_factory

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    "validation": 400,
    "not_connected": 400,
    "not_found": 404,
    "conflict": 409,
    "transport": 502,
}


# ── Request bodies ───────────────────────────────────────────────


class _Body(BaseModel):
    """Request bodies use camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str = Field(min_length=1)


class SendTextBody(_Body):
    to: str = Field(min_length=1)
    message: str = Field(min_length=1)


class SendImageBody(_Body):
    to: str = Field(min_length=1)
    image_url: str = Field(min_length=1)
    caption: str = ""


class SendDocumentBody(_Body):
    to: str = Field(min_length=1)
    document_url: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    mimetype: str = "application/pdf"


class SendLocationBody(_Body):
    to: str = Field(min_length=1)
    latitude: float
    longitude: float
    name: str = ""


class SendContactBody(_Body):
    to: str = Field(min_length=1)
    contact_name: str = Field(min_length=1)
    contact_phone: str = Field(min_length=1)


class SendButtonBody(_Body):
    to: str = Field(min_length=1)
    text: str = Field(min_length=1)
    footer: str = ""
    buttons: list[str]


class PhoneBody(_Body):
    phone: str = Field(min_length=1)


class GroupBody(_Body):
    group_id: str = Field(min_length=1)


class OverviewBody(_Body):
    limit: int = Field(50, ge=1, le=1000)
    offset: int = Field(0, ge=0)
    type: Literal["all", "personal", "group"] = "all"


class ContactsBody(_Body):
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)
    search: str = ""


class MessagesBody(_Body):
    chat_id: str = Field(min_length=1)
    limit: int = Field(50, ge=1, le=1000)
    cursor: str | None = None


class ChatBody(_Body):
    chat_id: str = Field(min_length=1)


# ── Serialization ────────────────────────────────────────────────


def _chat_to_dict(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "name": chat.name or jid_user(chat.id),
        "phone": None if chat.is_group else jid_user(chat.id),
        "is_group": chat.is_group,
        "profile_picture": chat.profile_picture,
        "last_message": asdict(chat.last_message) if chat.last_message else None,
        "last_message_timestamp": chat.last_activity,
        "unread_count": chat.unread_count,
    }


def _contact_to_dict(contact: Contact) -> dict:
    return {
        "id": contact.id,
        "phone": jid_user(contact.id),
        "name": contact.name,
        "push_name": contact.notify,
        "profile_picture": contact.profile_picture,
    }


def _message_to_dict(msg: Message) -> dict:
    content = content_to_dict(msg.content) if msg.content else {"type": "unknown"}
    kind = content.pop("type")
    return {
        "id": msg.id,
        "chat_id": msg.chat_id,
        "from_me": bool(msg.from_me),
        "sender": msg.sender,
        "sender_phone": jid_user(msg.sender) if msg.sender else None,
        "sender_name": msg.sender_name,
        "timestamp": msg.timestamp,
        "type": kind,
        "content": content,
        "is_group": is_group_jid(msg.chat_id),
        "quoted_message": asdict(msg.quoted) if msg.quoted else None,
    }


def _page_to_dict(page: Page, key: str, convert) -> dict:
    return {
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "has_more": page.has_more,
        key: [convert(item) for item in page.items],
    }


def _message_page_to_dict(page: MessagePage) -> dict:
    return {
        "chat_id": page.chat_id,
        "is_group": is_group_jid(page.chat_id),
        "total": len(page.messages),
        "limit": page.limit,
        "cursor": page.cursor,
        "has_more": page.has_more,
        "messages": [_message_to_dict(m) for m in page.messages],
    }


def _session_summary(session: Session) -> dict:
    info = session.info()
    return {k: info[k] for k in ("session_id", "status", "is_connected", "phone_number", "name")}


def _respond(result: Result, data=None) -> JSONResponse:
    if data is None and result.data is not None:
        data = asdict(result.data) if isinstance(result.data, SentMessage) else result.data
    status = 200 if result.success else _STATUS_BY_ERROR.get(result.error, 500)
    return JSONResponse(
        {"success": result.success, "message": result.message, "data": data},
        status_code=status,
    )


def _respond_page(result: Result, convert) -> JSONResponse:
    if not result.success:
        return _respond(result)
    return _respond(result, convert(result.data))


# ── Dependencies ─────────────────────────────────────────────────


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _require_session(registry: SessionRegistry, session_id: str) -> Session:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ── Routes ───────────────────────────────────────────────────────

router = APIRouter(prefix="/api/whatsapp")


@router.get("/sessions")
async def list_sessions(registry: SessionRegistry = Depends(get_registry)):
    return {
        "success": True,
        "message": "Sessions retrieved",
        "data": [_session_summary(s) for s in registry.get_all()],
    }


@router.post("/sessions/{session_id}/connect")
async def connect_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    return _respond(await registry.create(session_id))


@router.get("/sessions/{session_id}/status")
async def session_status(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, session_id)
    return {"success": True, "message": "Status retrieved", "data": _session_summary(session)}


@router.get("/sessions/{session_id}/qr")
async def session_qr(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found. Please create session first.")

    if session.is_connected:
        return {
            "success": True,
            "message": "Already connected to WhatsApp",
            "data": {"session_id": session_id, "status": "connected", "qr_code": None},
        }
    if not session.challenge:
        return JSONResponse(
            {
                "success": False,
                "message": "QR Code not available yet. Please wait...",
                "data": {"status": session.status.value},
            },
            status_code=404,
        )
    return {
        "success": True,
        "message": "QR Code ready",
        "data": {"session_id": session_id, "qr_code": session.challenge, "status": session.status.value},
    }


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    return _respond(await registry.delete(session_id))


# Chat API


@router.post("/chats/send-text")
async def send_text(body: SendTextBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.send_text(body.to, body.message))


@router.post("/chats/send-image")
async def send_image(body: SendImageBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.send_image(body.to, body.image_url, body.caption))


@router.post("/chats/send-document")
async def send_document(body: SendDocumentBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(
        await session.send_document(body.to, body.document_url, body.filename, body.mimetype)
    )


@router.post("/chats/send-location")
async def send_location(body: SendLocationBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.send_location(body.to, body.latitude, body.longitude, body.name))


@router.post("/chats/send-contact")
async def send_contact(body: SendContactBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.send_contact(body.to, body.contact_name, body.contact_phone))


@router.post("/chats/send-button")
async def send_button(body: SendButtonBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.send_buttons(body.to, body.text, body.footer, body.buttons))


@router.post("/chats/check-number")
async def check_number(body: PhoneBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.is_registered(body.phone))


@router.post("/chats/profile-picture")
async def profile_picture(body: PhoneBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.profile_picture(body.phone))


@router.post("/chats/contact-info")
async def contact_info(body: PhoneBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.contact_info(body.phone))


@router.post("/groups")
async def groups(body: _Body, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.groups())


@router.post("/groups/metadata")
async def group_metadata(body: GroupBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.group_metadata(body.group_id))


# Chat history API


@router.post("/chats/overview")
async def chats_overview(body: OverviewBody, registry: SessionRegistry = Depends(get_registry)):
    """Chats by most recent activity. type: all | personal | group."""
    session = _require_session(registry, body.session_id)
    result = await session.chats_overview(body.limit, body.offset, body.type)
    return _respond_page(result, lambda page: _page_to_dict(page, "chats", _chat_to_dict))


@router.post("/contacts")
async def contacts(body: ContactsBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    result = await session.contacts(body.limit, body.offset, body.search)
    return _respond_page(result, lambda page: _page_to_dict(page, "contacts", _contact_to_dict))


@router.post("/chats/messages")
async def chat_messages(body: MessagesBody, registry: SessionRegistry = Depends(get_registry)):
    """Messages of a chat, newest first. Pass the returned cursor for older ones."""
    session = _require_session(registry, body.session_id)
    result = await session.chat_messages(body.chat_id, body.limit, body.cursor)
    return _respond_page(result, _message_page_to_dict)


@router.post("/chats/info")
async def chat_info(body: ChatBody, registry: SessionRegistry = Depends(get_registry)):
    session = _require_session(registry, body.session_id)
    return _respond(await session.chat_info(body.chat_id))


# ── Application ──────────────────────────────────────────────────


def create_app(registry: SessionRegistry) -> FastAPI:
    """Build the app around a registry; startup restores, shutdown closes sessions."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await registry.restore_all()
        logger.info("Restored %d session(s)", len(registry.get_all()))
        yield
        await registry.shutdown()

    app = FastAPI(title="chatery", version=__version__, lifespan=lifespan)
    app.state.registry = registry
    app.include_router(router)

    @app.exception_handler(HTTPException)
    async def http_error(_: Request, exc: HTTPException):
        return JSONResponse({"success": False, "message": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(_: Request, exc: RequestValidationError):
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        return JSONResponse(
            {"success": False, "message": f"Invalid or missing fields: {', '.join(fields)}"},
            status_code=400,
        )

    @app.get("/")
    async def index():
        return {
            "success": True,
            "message": "Welcome to Chatery WhatsApp API",
            "version": __version__,
            "endpoints": sorted(
                f"{sorted(route.methods)[0]} {route.path}"
                for route in router.routes
            ),
        }

    @app.get("/api/health")
    async def health():
        return {
            "success": True,
            "message": "Server is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def app_from_env() -> FastAPI:
    """App factory for ``uvicorn chatery.server:app_from_env --factory``."""
    transport_path = get_transport_path()
    if not transport_path:
        raise RuntimeError("CHATERY_TRANSPORT is not set (expected 'module:callable')")
    registry = SessionRegistry(
        FileSessionStorage(get_sessions_path()),
        load_transport_factory(transport_path),
        settings=Settings.from_env(),
    )
    return create_app(registry)
