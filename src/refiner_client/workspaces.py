"""Client-side cache of workspaces, their messages and documents, and presence.

The store owns one ``WorkspaceTransport`` bound to the current workspace.
Frames are applied in arrival order. REST refreshes replace the message
list wholesale, so a frame delivered while a refresh is in flight can be
overwritten when the refresh lands; this race is accepted.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode

from .api import ApiError, GatewayClient
from .core import ChatMessage, DocumentContext, Observable, Workspace, utcnow
from .frames import Frame, FrameType, encode_typing
from .optimistic import optimistic
from .provider import AuthProvider
from .sessions import make_temp_id
from .transport import DEFAULT_RECONNECT_DELAY, NORMAL_CLOSURE, Connector, WorkspaceTransport

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT = 5.0


def _items(payload, key: str) -> list:
    if isinstance(payload, dict):
        return payload.get(key) or []
    return payload or []


class WorkspaceStore(Observable):
    """Workspaces, the current workspace's contents and its live connection."""

    def __init__(
        self,
        api: GatewayClient,
        auth: AuthProvider,
        ws_url: str,
        connector: Optional[Connector] = None,
        auto_connect: bool = True,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT,
    ):
        super().__init__()
        self._api = api
        self._auth = auth
        self._ws_url = ws_url.rstrip("/")
        self.auto_connect = auto_connect
        self.typing_timeout = typing_timeout

        self.workspaces: list[Workspace] = []
        self.current_workspace: Optional[Workspace] = None
        self.messages: list[ChatMessage] = []
        self.is_loading_messages = False
        self.documents: list[DocumentContext] = []
        self.active_document_id: Optional[str] = None
        self.online_users: list[str] = []
        self.typing_users: list[str] = []
        self.is_sending = False
        self.error: Optional[str] = None

        self.transport = WorkspaceTransport(
            on_frame=self._handle_frame,
            on_open=self._on_open,
            on_close=self._on_close,
            connector=connector,
            reconnect_delay=reconnect_delay,
            should_reconnect=lambda: self.current_workspace is not None,
        )
        self._typing_timer: Optional[asyncio.Task] = None
        self._selection = 0
        self._auto_created = False

    @property
    def user_id(self) -> Optional[str]:
        return self._auth.get_user_id()

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    def _is_current(self, workspace_id: str) -> bool:
        return self.current_workspace is not None and self.current_workspace.id == workspace_id

    def _fail(self, message: str) -> None:
        self.error = message
        self._notify()

    def socket_url(self, workspace_id: str) -> str:
        query = urlencode({"user_id": self.user_id or ""})
        return f"{self._ws_url}/workspaces/{workspace_id}/ws?{query}"

    # ── Connection ───────────────────────────────────────────────

    async def connect(self) -> bool:
        if self.current_workspace is None or not self.user_id:
            logger.info("Cannot connect: missing workspace or user id")
            return False
        return await self.transport.connect(self.socket_url(self.current_workspace.id))

    async def disconnect(self) -> None:
        self._cancel_typing_timer()
        await self.transport.disconnect()
        self.online_users = []
        self.typing_users = []
        self._notify()

    def _on_open(self) -> None:
        self.error = None
        self._notify()

    def _on_close(self, code: int) -> None:
        self.online_users = []
        self.typing_users = []
        if code != NORMAL_CLOSURE:
            self.error = "Connection error"
        self._notify()

    async def _handle_frame(self, frame: Frame) -> None:
        data = frame.data
        if frame.type is FrameType.MESSAGE:
            try:
                message = ChatMessage.from_dict(data)
            except KeyError:
                logger.error("Dropping message frame without id: %r", data)
                return
            if not any(m.id == message.id for m in self.messages):
                self.messages = self.messages + [message]
        elif frame.type is FrameType.TYPING:
            user_id = data.get("user_id")
            if not user_id:
                logger.debug("Dropping typing frame without user_id: %r", data)
                return
            if data.get("is_typing"):
                if user_id not in self.typing_users:
                    self.typing_users = self.typing_users + [user_id]
            else:
                self.typing_users = [u for u in self.typing_users if u != user_id]
        elif frame.type is FrameType.PRESENCE:
            self.online_users = list(data.get("online_users") or [])
        elif frame.type is FrameType.DOCUMENT_UPDATE:
            if data.get("update_type") == "active_changed":
                self.active_document_id = data.get("document_id")
            self._notify()
            # the event does not carry the document list
            await self.refresh_documents()
        elif frame.type is FrameType.MESSAGES_CLEARED:
            self.messages = []
        elif frame.type is FrameType.PONG:
            return
        else:
            logger.debug("Ignoring unknown frame type %r", frame.tag)
            return
        self._notify()

    # ── Typing indicator ─────────────────────────────────────────

    async def set_typing(self, is_typing: bool) -> bool:
        """Send a typing frame; ``True`` clears itself after ``typing_timeout``."""
        if not self.transport.is_open:
            return False
        self._cancel_typing_timer()
        sent = await self.transport.send(encode_typing(is_typing))
        if sent and is_typing:
            self._typing_timer = asyncio.create_task(self._clear_typing_later())
        return sent

    async def _clear_typing_later(self) -> None:
        await asyncio.sleep(self.typing_timeout)
        self._typing_timer = None
        await self.set_typing(False)

    def _cancel_typing_timer(self) -> None:
        task, self._typing_timer = self._typing_timer, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ── Loading ──────────────────────────────────────────────────

    async def reset(self) -> None:
        self._selection += 1
        await self.disconnect()
        self.workspaces = []
        self.current_workspace = None
        self.messages = []
        self.documents = []
        self.active_document_id = None
        self.error = None
        self._auto_created = False
        self._notify()

    async def load(self) -> None:
        """Reload for the current identity and auto-select a workspace."""
        await self.reset()
        if not self.user_id:
            return
        # auto-create only after a listing that succeeded
        if await self.refresh_workspaces() is None:
            return
        await self._auto_select()

    async def _auto_select(self) -> None:
        if self.current_workspace is not None or not self.user_id:
            return
        if self.workspaces:
            logger.info("Auto-selecting first workspace: %s", self.workspaces[0].name)
            await self.select_workspace(self.workspaces[0].id)
        elif not self._auto_created:
            self._auto_created = True
            await self.create_workspace()

    async def refresh_workspaces(self) -> Optional[list[Workspace]]:
        """Replace the workspace list; returns None when the listing failed."""
        user_id = self.user_id
        if not user_id:
            return []
        self.error = None
        try:
            payload = await self._api.list_workspaces(user_id)
        except ApiError as e:
            logger.error("Failed to fetch workspaces: %s", e)
            self._fail(e.message)
            return None
        self.workspaces = [Workspace.from_dict(w) for w in _items(payload, "workspaces")]
        self._notify()
        return self.workspaces

    async def _load_messages(self, workspace_id: str) -> Optional[list[ChatMessage]]:
        try:
            payload = await self._api.list_workspace_messages(self.user_id, workspace_id)
        except ApiError as e:
            logger.error("Failed to fetch messages: %s", e)
            return None
        return [ChatMessage.from_dict(m) for m in _items(payload, "messages")]

    async def _load_documents(self, workspace_id: str) -> Optional[tuple[list[DocumentContext], Optional[str]]]:
        try:
            payload = await self._api.list_documents(self.user_id, workspace_id)
        except ApiError as e:
            logger.error("Failed to fetch documents: %s", e)
            return None
        documents = [DocumentContext.from_dict(d) for d in _items(payload, "documents")]
        active = payload.get("active_document_id") if isinstance(payload, dict) else None
        return documents, active

    async def refresh_documents(self) -> None:
        if self.current_workspace is None or not self.user_id:
            return
        workspace_id = self.current_workspace.id
        result = await self._load_documents(workspace_id)
        if result is None or not self._is_current(workspace_id):
            return
        self.documents, self.active_document_id = result
        self._notify()

    # ── Workspaces ───────────────────────────────────────────────

    async def create_workspace(self, name: Optional[str] = None) -> Optional[Workspace]:
        user_id = self.user_id
        if not user_id:
            return None
        self.error = None
        try:
            payload = await self._api.create_workspace(user_id, name)
            workspace = Workspace.from_dict(payload)
        except (ApiError, KeyError, TypeError) as e:
            logger.error("Failed to create workspace: %s", e)
            self._fail("Failed to create workspace")
            return None

        self.workspaces = [workspace] + [w for w in self.workspaces if w.id != workspace.id]
        self._notify()
        if self.current_workspace is None:
            await self.select_workspace(workspace.id)
        return workspace

    async def select_workspace(self, workspace_id: str) -> bool:
        """Make a workspace current. A newer selection made meanwhile wins."""
        self._selection += 1
        token = self._selection
        await self.disconnect()

        user_id = self.user_id
        workspace = next((w for w in self.workspaces if w.id == workspace_id), None)
        if workspace is None and user_id:
            try:
                workspace = Workspace.from_dict(await self._api.get_workspace(user_id, workspace_id))
            except (ApiError, KeyError, TypeError) as e:
                logger.error("Failed to fetch workspace: %s", e)
        if workspace is None or not user_id:
            if token == self._selection:
                # the previous workspace stays current, so bring its socket back
                if self.auto_connect and self.current_workspace is not None:
                    await self.connect()
                self._fail(f"Workspace not found: {workspace_id}")
            return False

        self.is_loading_messages = True
        self._notify()
        try:
            messages, documents = await asyncio.gather(
                self._load_messages(workspace_id),
                self._load_documents(workspace_id),
            )
        finally:
            self.is_loading_messages = False
        if token != self._selection:
            self._notify()
            return False

        self.current_workspace = workspace
        self.messages = messages or []
        self.documents, self.active_document_id = documents or ([], None)
        self._notify()

        if self.auto_connect:
            await self.connect()
        return True

    async def delete_workspace(self, workspace_id: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        self.error = None
        try:
            await self._api.delete_workspace(user_id, workspace_id)
        except ApiError as e:
            logger.error("Failed to delete workspace: %s", e)
            self._fail(e.message)
            return False

        self.workspaces = [w for w in self.workspaces if w.id != workspace_id]
        if self._is_current(workspace_id):
            self.current_workspace = None
            self.messages = []
            self.documents = []
            self.active_document_id = None
            await self.disconnect()
            await self._auto_select()
        self._notify()
        return True

    # ── Participants ─────────────────────────────────────────────

    async def add_participant(self, target_user_id: str) -> bool:
        user_id = self.user_id
        if self.current_workspace is None or not user_id:
            return False
        try:
            await self._api.add_workspace_participant(user_id, self.current_workspace.id, target_user_id)
        except ApiError as e:
            logger.error("Failed to add participant: %s", e)
            self._fail(e.message)
            return False
        return True

    async def remove_participant(self, target_user_id: str) -> bool:
        user_id = self.user_id
        if self.current_workspace is None or not user_id:
            return False
        try:
            await self._api.remove_workspace_participant(user_id, self.current_workspace.id, target_user_id)
        except ApiError as e:
            logger.error("Failed to remove participant: %s", e)
            self._fail(e.message)
            return False
        return True

    # ── Messages ─────────────────────────────────────────────────

    async def send_message(self, content: str, schema_levels: Optional[dict] = None) -> Optional[ChatMessage]:
        """Post to the AI chat endpoint; returns the assistant reply or None."""
        user_id = self.user_id
        if self.current_workspace is None or not user_id or not content.strip():
            return None

        workspace_id = self.current_workspace.id
        temp = ChatMessage(
            id=make_temp_id(),
            session_id=workspace_id,
            user_id=user_id,
            role="user",
            content=content.strip(),
            timestamp=utcnow(),
        )
        self.is_sending = True
        self.error = None

        def apply() -> None:
            self.messages = self.messages + [temp]
            self._notify()

        def revert() -> None:
            self.messages = [m for m in self.messages if m.id != temp.id]
            self._notify()

        async def commit() -> dict:
            data = await self._api.workspace_chat(user_id, workspace_id, content, schema_levels)
            if not isinstance(data, dict) or not data.get("success"):
                error = data.get("error") if isinstance(data, dict) else None
                raise ApiError(error or "Failed to send message")
            return data

        def confirm(data: dict) -> None:
            messages = [m for m in self.messages if m.id != temp.id]
            if self._is_current(workspace_id):
                for key in ("user_message", "assistant_message"):
                    if data.get(key):
                        message = ChatMessage.from_dict(data[key])
                        if not any(m.id == message.id for m in messages):
                            messages.append(message)
            self.messages = messages
            self._notify()

        try:
            data = await optimistic(apply, commit, revert, confirm)
        except ApiError as e:
            logger.error("Failed to send message: %s", e)
            self.error = e.message
            return None
        finally:
            self.is_sending = False
            self._notify()

        assistant = data.get("assistant_message")
        return ChatMessage.from_dict(assistant) if assistant else None

    async def clear_messages(self) -> bool:
        user_id = self.user_id
        if self.current_workspace is None or not user_id:
            return False
        workspace_id = self.current_workspace.id
        self.error = None
        try:
            await self._api.clear_workspace(user_id, workspace_id)
        except ApiError as e:
            logger.error("Failed to clear messages: %s", e)
            self._fail(e.message)
            return False
        if self._is_current(workspace_id):
            self.messages = []
            self._notify()
        return True

    # ── Documents ────────────────────────────────────────────────

    async def add_document(self, file_id: str, filename: str, file_type: str, job_id: Optional[str] = None) -> bool:
        user_id = self.user_id
        if self.current_workspace is None or not user_id:
            return False
        body = {"file_id": file_id, "filename": filename, "file_type": file_type}
        if job_id is not None:
            body["job_id"] = job_id
        self.error = None
        try:
            await self._api.add_document(user_id, self.current_workspace.id, body)
        except ApiError as e:
            logger.error("Failed to add document: %s", e)
            self._fail(e.message)
            return False
        # the backend does not echo the list back on add
        await self.refresh_documents()
        return True

    async def set_active_document(self, file_id: str) -> bool:
        user_id = self.user_id
        if self.current_workspace is None or not user_id:
            return False
        workspace_id = self.current_workspace.id
        self.error = None
        try:
            await self._api.set_active_document(user_id, workspace_id, file_id)
        except ApiError as e:
            logger.error("Failed to set active document: %s", e)
            self._fail(e.message)
            return False
        if self._is_current(workspace_id):
            self.active_document_id = file_id
            self._notify()
        return True
