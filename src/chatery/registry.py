"""Registry of live sessions."""

import asyncio
import logging
import re

from .config import Settings
from .core import Result, SessionStatus
from .exceptions import ConflictError, NotFoundError, ValidationError
from .session import ChallengeRenderer, Session, render_challenge
from .storage import SessionStorage
from .transport import TransportFactory

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_session_id(session_id: str) -> str:
    if not session_id or not SESSION_ID_PATTERN.match(session_id):
        raise ValidationError(
            "Invalid session ID. Use only letters, numbers, underscore, and dash."
        )
    return session_id


class SessionRegistry:
    """Holds every session of the process, keyed by session id.

    Lifecycle: ``restore_all()`` once at startup, ``shutdown()`` once at exit.
    """

    def __init__(
        self,
        storage: SessionStorage,
        transport_factory: TransportFactory,
        settings: Settings | None = None,
        renderer: ChallengeRenderer = render_challenge,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self._transport_factory = transport_factory
        self._renderer = renderer
        self._sessions: dict[str, Session] = {}

    def _new_session(self, session_id: str) -> Session:
        return Session(
            session_id,
            self.storage,
            self._transport_factory,
            settings=self.settings,
            renderer=self._renderer,
        )

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_all(self) -> list[Session]:
        return list(self._sessions.values())

    async def restore_all(self) -> None:
        """Reconnect every session that has a storage slot."""
        session_ids = await asyncio.to_thread(self.storage.list_sessions)
        await asyncio.gather(*(self._restore(sid) for sid in session_ids))

    async def _restore(self, session_id: str) -> None:
        try:
            validate_session_id(session_id)
            logger.info("Restoring session: %s", session_id)
            session = self._new_session(session_id)
            self._sessions[session_id] = session
            result = await session.connect()
            if not result.success:
                logger.warning("[%s] Restore failed: %s", session_id, result.message)
        except Exception:
            logger.exception("Error restoring session %s", session_id)

    async def create(self, session_id: str) -> Result:
        """Create and connect a session, or re-drive an existing disconnected one."""
        try:
            validate_session_id(session_id)
        except ValidationError as e:
            return Result.fail(e)

        existing = self._sessions.get(session_id)
        if existing is not None:
            if existing.status == SessionStatus.CONNECTED:
                return Result.fail(ConflictError("Session already connected"), data=existing.info())
            result = await existing.connect()
            if not result.success:
                return Result(success=False, message=result.message, data=existing.info(), error=result.error)
            return Result.ok("Reconnecting existing session", existing.info())

        session = self._new_session(session_id)
        self._sessions[session_id] = session
        result = await session.connect()
        if not result.success:
            return Result(success=False, message=result.message, data=session.info(), error=result.error)
        return Result.ok("Session created", session.info())

    async def delete(self, session_id: str) -> Result:
        """Log a session out and forget it."""
        session = self._sessions.get(session_id)
        if session is None:
            return Result.fail(NotFoundError("Session not found"))

        result = await session.logout()
        self._sessions.pop(session_id, None)
        logger.info("[%s] Session deleted", session_id)
        return Result.ok("Session deleted successfully", {"logout": result.message})

    async def shutdown(self) -> None:
        """Close every session without logging out."""
        sessions = list(self._sessions.values())
        results = await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
        for session, outcome in zip(sessions, results):
            if isinstance(outcome, Exception):
                logger.error("[%s] Error during shutdown: %s", session.session_id, outcome)
