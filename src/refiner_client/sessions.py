"""Client-side cache of a user's chat sessions and the open session's messages."""

import itertools
import logging
import re
import time
from dataclasses import replace
from typing import Optional

from .api import ApiError, GatewayClient
from .core import ChatMessage, ChatSession, Observable, Participant, TEMP_ID_PREFIX, utcnow
from .optimistic import optimistic
from .provider import AuthProvider

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TITLE = "Chat 1"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_temp_counter = itertools.count()


def make_temp_id() -> str:
    """Return a provisional message id; the prefix never appears in server ids."""
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{next(_temp_counter)}"


def _sort_by_updated(sessions: list[ChatSession]) -> list[ChatSession]:
    return sorted(
        sessions,
        key=lambda s: s.updated_at.timestamp() if s.updated_at else 0.0,
        reverse=True,
    )


def _session_list(payload) -> list[dict]:
    if isinstance(payload, dict):
        return payload.get("sessions") or []
    return payload or []


def _message_list(payload) -> list[ChatMessage]:
    items = payload.get("messages") if isinstance(payload, dict) else payload
    return [ChatMessage.from_dict(m) for m in items or []]


class SessionStore(Observable):
    """Sessions, the current session and its messages.

    Operations never raise: failures land in ``error`` and the operation
    returns ``None``/``False``.
    """

    def __init__(self, api: GatewayClient, auth: AuthProvider):
        super().__init__()
        self._api = api
        self._auth = auth
        self.sessions: list[ChatSession] = []
        self.current_session: Optional[ChatSession] = None
        self.messages: list[ChatMessage] = []
        self.loading = False
        self.error: Optional[str] = None
        self._auto_created = False

    @property
    def user_id(self) -> Optional[str]:
        return self._auth.get_user_id()

    def _fail(self, message: str) -> None:
        self.error = message
        self._notify()

    def _is_current(self, session_id: str) -> bool:
        return self.current_session is not None and self.current_session.id == session_id

    def _find(self, session_id: str) -> Optional[ChatSession]:
        return next((s for s in self.sessions if s.id == session_id), None)

    def _replace_session(self, updated: ChatSession) -> None:
        self.sessions = [updated if s.id == updated.id else s for s in self.sessions]
        if self._is_current(updated.id):
            self.current_session = updated

    # ── Bootstrap ────────────────────────────────────────────────

    def reset(self) -> None:
        self.sessions = []
        self.current_session = None
        self.messages = []
        self.error = None
        self._auto_created = False
        self._notify()

    async def load(self) -> None:
        """Reload everything for the current identity.

        Selects the most recent session, or creates exactly one default
        session when the user has none.
        """
        self.reset()
        if not self.user_id:
            return
        await self.list_sessions()
        await self._auto_select()

    async def _auto_select(self) -> None:
        user_id = self.user_id
        if not user_id or self.loading:
            return

        if self.sessions and self.current_session is None:
            first = self.sessions[0]
            self.current_session = first
            self._notify()
            try:
                payload = await self._api.list_session_messages(user_id, first.id)
            except ApiError as e:
                logger.error("Failed to load messages: %s", e)
                return
            if self._is_current(first.id):
                self.messages = _message_list(payload)
                self._notify()
        elif not self.sessions and not self._auto_created:
            self._auto_created = True
            await self.create_session(DEFAULT_SESSION_TITLE)

    # ── Sessions ─────────────────────────────────────────────────

    async def list_sessions(self, user_id: Optional[str] = None) -> list[ChatSession]:
        user_id = user_id or self.user_id
        if not user_id:
            logger.warning("No user ID found, cannot load sessions")
            return []

        self.loading = True
        self.error = None
        self._notify()
        try:
            payload = await self._api.list_sessions(user_id)
            sessions = [ChatSession.from_dict(s) for s in _session_list(payload)]
            owned = [s for s in sessions if s.user_id == user_id]
            if len(owned) != len(sessions):
                logger.warning(
                    "Filtered out %d session(s) not owned by user %s",
                    len(sessions) - len(owned),
                    user_id,
                )
            self.sessions = owned
            logger.info("Loaded %d sessions for user %s", len(owned), user_id)
        except ApiError as e:
            logger.error("Failed to refresh sessions: %s", e)
            self.error = e.message
            self.sessions = []
        finally:
            self.loading = False
            self._notify()
        return self.sessions

    async def refresh_messages(self) -> None:
        user_id = self.user_id
        if self.current_session is None or not user_id:
            return
        session_id = self.current_session.id
        try:
            payload = await self._api.list_session_messages(user_id, session_id)
        except ApiError as e:
            logger.error("Failed to refresh messages: %s", e)
            self._fail(e.message)
            return
        if self._is_current(session_id):
            self.messages = _message_list(payload)
            self._notify()

    async def create_session(self, title: Optional[str] = None, workspace_id: Optional[str] = None) -> Optional[str]:
        user_id = self.user_id
        if not user_id:
            logger.warning("No user ID, cannot create session")
            return None

        self.loading = True
        self.error = None
        self._notify()
        try:
            payload = await self._api.create_session(user_id, title, workspace_id)
            session = ChatSession.from_dict(payload)
        except (ApiError, KeyError, TypeError) as e:
            logger.error("Failed to create session: %s", e)
            self.error = e.message if isinstance(e, ApiError) else "Failed to create session"
            return None
        finally:
            self.loading = False
            self._notify()

        self.sessions = [session] + [s for s in self.sessions if s.id != session.id]
        self.current_session = session
        self.messages = []
        self._notify()
        return session.id

    async def switch_session(self, session_id: str) -> None:
        session = self._find(session_id)
        user_id = self.user_id
        if session is None or not user_id:
            return

        self.loading = True
        self.error = None
        self.current_session = session
        self.messages = []
        self._notify()
        try:
            payload = await self._api.list_session_messages(user_id, session_id)
        except ApiError as e:
            logger.error("Failed to switch session: %s", e)
            self.error = e.message
        else:
            # a later switch wins over this response
            if self._is_current(session_id):
                self.messages = _message_list(payload)
        finally:
            self.loading = False
            self._notify()

    async def delete_session(self, session_id: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False

        self.error = None
        try:
            await self._api.delete_session(user_id, session_id)
        except ApiError as e:
            logger.error("Failed to delete session: %s", e)
            self._fail(e.message)
            return False

        self.sessions = [s for s in self.sessions if s.id != session_id]
        self._notify()

        if self._is_current(session_id):
            if self.sessions:
                await self.switch_session(self.sessions[0].id)
            else:
                self.current_session = None
                self.messages = []
                self._notify()
                await self.create_session()
        return True

    async def rename_session(self, session_id: str, title: str) -> bool:
        user_id = self.user_id
        previous = self._find(session_id)
        if not user_id or previous is None:
            return False

        self.error = None

        def apply() -> None:
            self._replace_session(previous.evolve(title=title, updated_at=utcnow()))
            self._notify()

        def revert() -> None:
            if self._find(session_id) is not None:
                self._replace_session(previous)
            self._notify()

        try:
            await optimistic(apply, lambda: self._api.rename_session(user_id, session_id, title), revert)
        except ApiError as e:
            logger.error("Failed to rename session: %s", e)
            self._fail(e.message)
            return False
        return True

    async def clear_messages(self, session_id: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False

        self.error = None
        try:
            await self._api.clear_session_messages(user_id, session_id)
        except ApiError as e:
            logger.error("Failed to clear messages: %s", e)
            self._fail(e.message)
            return False

        if self._is_current(session_id):
            self.messages = []
        session = self._find(session_id)
        if session is not None:
            self._replace_session(session.evolve(message_count=0))
        self._notify()
        return True

    # ── Messages ─────────────────────────────────────────────────

    async def send_message(self, content: str, role: str = "user", metadata: Optional[dict] = None) -> Optional[ChatMessage]:
        """Append optimistically, then confirm; returns the confirmed message."""
        user_id = self.user_id
        if self.current_session is None or not user_id:
            return None

        session_id = self.current_session.id
        temp = ChatMessage(
            id=make_temp_id(),
            session_id=session_id,
            user_id=user_id,
            role=role,
            content=content,
            timestamp=utcnow(),
            metadata=metadata or {},
        )
        body = {"role": role, "content": content}
        if metadata is not None:
            body["metadata"] = metadata
        self.error = None
        confirmed: list[ChatMessage] = []

        def apply() -> None:
            self.messages = self.messages + [temp]
            self._notify()

        def revert() -> None:
            self.messages = [m for m in self.messages if m.id != temp.id]
            self._notify()

        def confirm(data) -> None:
            data = data or {}
            message_id = data.get("message_id")
            if not message_id:
                revert()
                return
            message = replace(temp, id=str(message_id))
            confirmed.append(message)
            if any(m.id == message.id for m in self.messages):
                self.messages = [m for m in self.messages if m.id != temp.id]
            else:
                self.messages = [message if m.id == temp.id else m for m in self.messages]

            added = 1
            if data.get("assistant_message_id") and data.get("assistant_content"):
                reply = ChatMessage(
                    id=str(data["assistant_message_id"]),
                    session_id=session_id,
                    user_id=user_id,
                    role="assistant",
                    content=data["assistant_content"],
                    timestamp=utcnow(),
                    metadata=data.get("assistant_metadata") or {},
                )
                added = 2
                if self._is_current(session_id) and not any(m.id == reply.id for m in self.messages):
                    self.messages = self.messages + [reply]

            session = self._find(session_id)
            if session is not None:
                self._replace_session(
                    session.evolve(message_count=session.message_count + added, updated_at=utcnow())
                )
                self.sessions = _sort_by_updated(self.sessions)
            self._notify()

        try:
            await optimistic(
                apply,
                lambda: self._api.add_session_message(user_id, session_id, body),
                revert,
                confirm,
            )
        except ApiError as e:
            logger.error("Failed to send message: %s", e)
            self._fail(e.message)
            return None
        if not confirmed:
            self._fail("Failed to send message: no message id returned")
            return None
        return confirmed[0]

    # ── Sharing ──────────────────────────────────────────────────

    async def share_session(self, session_id: str, participant_emails: tuple = ()) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        self.error = None
        try:
            await self._api.share_session(user_id, session_id, list(participant_emails))
        except ApiError as e:
            logger.error("Failed to share session: %s", e)
            self._fail(e.message)
            return False
        session = self._find(session_id)
        if session is not None:
            self._replace_session(session.evolve(is_shared=True))
            self._notify()
        return True

    async def unshare_session(self, session_id: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        self.error = None
        try:
            await self._api.unshare_session(user_id, session_id)
        except ApiError as e:
            logger.error("Failed to unshare session: %s", e)
            self._fail(e.message)
            return False
        session = self._find(session_id)
        if session is not None:
            self._replace_session(session.evolve(is_shared=False, participants=[]))
            self._notify()
        return True

    async def list_participants(self, session_id: str) -> list[Participant]:
        """Fetch participants; private sessions have none and are not queried."""
        user_id = self.user_id
        session = self._find(session_id)
        if not user_id or session is None or not session.is_shared:
            return []
        try:
            payload = await self._api.list_session_participants(user_id, session_id)
        except ApiError as e:
            logger.error("Failed to load participants: %s", e)
            return []
        items = payload.get("participants") if isinstance(payload, dict) else payload
        return [Participant.from_dict(p) for p in items or []]

    async def add_participant(self, session_id: str, email: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        email = email.strip()
        if not _EMAIL_RE.match(email):
            self._fail("Please enter a valid email address")
            return False

        self.error = None
        session = self._find(session_id)
        if session is not None and not session.is_shared:
            if not await self.share_session(session_id):
                return False
        try:
            await self._api.add_session_participant(user_id, session_id, email)
        except ApiError as e:
            logger.error("Failed to add participant: %s", e)
            self._fail(e.message)
            return False
        return True

    async def remove_participant(self, session_id: str, participant_id: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        self.error = None
        try:
            await self._api.remove_session_participant(user_id, session_id, participant_id)
        except ApiError as e:
            logger.error("Failed to remove participant: %s", e)
            self._fail(e.message)
            return False
        return True
