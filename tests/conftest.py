"""Shared test fixtures for refiner-client."""

import asyncio
import itertools
import json

import httpx
import pytest
import pytest_asyncio

from refiner_client.provider import StaticAuthProvider
from refiner_client.store import create_store

_CLOSED = object()


class FakeRefinerApi:
    """In-memory stand-in for the gateway's ``/api`` routes.

    Register failures with ``fail("POST", "/api/...", status)``; every
    request is recorded in ``calls`` as ``(method, path)``.
    """

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.session_messages: dict[str, list[dict]] = {}
        self.participants: dict[str, list[dict]] = {}
        self.workspaces: dict[str, dict] = {}
        self.workspace_messages: dict[str, list[dict]] = {}
        self.documents: dict[str, list[dict]] = {}
        self.active_documents: dict[str, str | None] = {}
        self.assistant_reply: str | None = None
        self.calls: list[tuple[str, str]] = []
        self.bodies: list[dict] = []
        self.failures: dict[tuple[str, str], int] = {}
        self._ids = itertools.count(1)

    # ── Seeding ──────────────────────────────────────────────────

    def add_session(self, session_id, user_id="u1", title="", message_count=0,
                    updated_at="2025-01-15T10:00:00Z", is_shared=False):
        self.sessions[session_id] = {
            "id": session_id,
            "user_id": user_id,
            "title": title or session_id,
            "created_at": "2025-01-15T09:00:00Z",
            "updated_at": updated_at,
            "message_count": message_count,
            "is_shared": is_shared,
        }
        self.session_messages.setdefault(session_id, [])
        return self.sessions[session_id]

    def add_session_message(self, session_id, message_id, content, role="user", user_id="u1"):
        self.session_messages.setdefault(session_id, []).append({
            "id": message_id,
            "session_id": session_id,
            "user_id": user_id,
            "role": role,
            "content": content,
            "timestamp": "2025-01-15T10:00:00Z",
        })

    def add_workspace(self, workspace_id, name="", owner_id="u1"):
        self.workspaces[workspace_id] = {
            "id": workspace_id,
            "name": name or workspace_id,
            "owner_id": owner_id,
            "participants": [owner_id],
            "message_count": 0,
            "document_count": 0,
            "created_at": 1736935200,
            "updated_at": 1736935200,
        }
        self.workspace_messages.setdefault(workspace_id, [])
        self.documents.setdefault(workspace_id, [])
        self.active_documents.setdefault(workspace_id, None)
        return self.workspaces[workspace_id]

    def add_workspace_message(self, workspace_id, message_id, content, role="user", sender_id="u1"):
        self.workspace_messages.setdefault(workspace_id, []).append({
            "id": message_id,
            "conversation_id": workspace_id,
            "sender_id": sender_id,
            "role": role,
            "content": content,
            "timestamp": 1736935200.0,
        })

    def add_document(self, workspace_id, file_id, filename="doc.pdf"):
        self.documents.setdefault(workspace_id, []).append({
            "file_id": file_id,
            "filename": filename,
            "file_type": "pdf",
            "current_pass": 1,
        })

    def fail(self, method, path, status=500):
        self.failures[(method, path)] = status

    def count(self, method, path):
        return self.calls.count((method, path))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # ── Routing ──────────────────────────────────────────────────

    def _next_id(self, prefix):
        return f"{prefix}{next(self._ids)}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else {}
        self.bodies.append(body)
        if (method, path) in self.failures:
            return httpx.Response(self.failures[(method, path)], json={"error": "boom"})

        parts = path.strip("/").split("/")[1:]
        user_id = request.url.params.get("user_id")
        if parts[:2] == ["chat", "sessions"]:
            return self._sessions(method, parts[2:], user_id, body)
        if parts[:1] == ["workspaces"]:
            return self._workspaces(method, parts[1:], user_id, body)
        return httpx.Response(404, json={"error": "Not found"})

    def _sessions(self, method, rest, user_id, body):
        if not rest:
            if method == "GET":
                return httpx.Response(200, json={"sessions": list(self.sessions.values())})
            session = self.add_session(self._next_id("s"), user_id=user_id, title=body.get("title") or "New Chat",
                                       updated_at="2025-01-16T10:00:00Z")
            return httpx.Response(200, json=session)

        session_id = rest[0]
        if session_id not in self.sessions:
            return httpx.Response(404, json={"error": "Session not found"})
        tail = rest[1:]
        if not tail:
            if method == "PATCH":
                self.sessions[session_id]["title"] = body["title"]
            elif method == "DELETE":
                del self.sessions[session_id]
                return httpx.Response(200, json={"deleted": True})
            return httpx.Response(200, json=self.sessions[session_id])

        if tail == ["messages"]:
            if method == "GET":
                return httpx.Response(200, json={"messages": self.session_messages[session_id]})
            if method == "DELETE":
                self.session_messages[session_id] = []
                return httpx.Response(200, json={"cleared": True})
            message_id = self._next_id("m")
            self.add_session_message(session_id, message_id, body["content"], body.get("role", "user"), user_id)
            payload = {"message_id": message_id}
            if self.assistant_reply:
                reply_id = self._next_id("m")
                self.add_session_message(session_id, reply_id, self.assistant_reply, "assistant", user_id)
                payload.update(assistant_message_id=reply_id, assistant_content=self.assistant_reply)
            return httpx.Response(200, json=payload)

        if tail == ["share"]:
            self.sessions[session_id]["is_shared"] = method == "POST"
            return httpx.Response(200, json={"is_shared": method == "POST"})

        if tail[0] == "participants":
            people = self.participants.setdefault(session_id, [])
            if method == "GET":
                return httpx.Response(200, json={"participants": people})
            if method == "POST":
                people.append({"user_id": self._next_id("p"), "email": body["email"], "name": body["email"]})
                return httpx.Response(200, json={"added": True})
            self.participants[session_id] = [p for p in people if p["user_id"] != tail[1]]
            return httpx.Response(200, json={"removed": True})

        return httpx.Response(404, json={"error": "Not found"})

    def _workspaces(self, method, rest, user_id, body):
        if not rest:
            if method == "GET":
                return httpx.Response(200, json=list(self.workspaces.values()))
            workspace = self.add_workspace(self._next_id("w"), name=body.get("name") or "Workspace", owner_id=user_id)
            return httpx.Response(200, json=workspace)

        workspace_id = rest[0]
        if workspace_id not in self.workspaces:
            return httpx.Response(404, json={"error": "Workspace not found"})
        tail = rest[1:]
        if not tail:
            if method == "DELETE":
                del self.workspaces[workspace_id]
                return httpx.Response(200, json={"deleted": True})
            return httpx.Response(200, json=self.workspaces[workspace_id])

        if tail == ["messages"]:
            return httpx.Response(200, json=self.workspace_messages[workspace_id])
        if tail == ["chat"]:
            user_message_id = self._next_id("m")
            self.add_workspace_message(workspace_id, user_message_id, body["message"], sender_id=user_id)
            reply_id = self._next_id("m")
            self.add_workspace_message(workspace_id, reply_id, f"Re: {body['message']}", role="assistant",
                                       sender_id="assistant")
            messages = self.workspace_messages[workspace_id]
            return httpx.Response(200, json={
                "success": True,
                "user_message": messages[-2],
                "assistant_message": messages[-1],
            })
        if tail == ["clear"]:
            self.workspace_messages[workspace_id] = []
            return httpx.Response(200, json={"cleared": True})
        if tail == ["documents"]:
            if method == "POST":
                self.add_document(workspace_id, body["file_id"], body["filename"])
                return httpx.Response(200, json={"added": True})
            return httpx.Response(200, json={
                "documents": self.documents[workspace_id],
                "active_document_id": self.active_documents[workspace_id],
            })
        if tail[0] == "documents" and tail[-1] == "active":
            self.active_documents[workspace_id] = tail[1]
            return httpx.Response(200, json={"active_document_id": tail[1]})
        if tail[0] == "participants":
            return httpx.Response(200, json={"success": True})

        return httpx.Response(404, json={"error": "Not found"})


class FakeSocket:
    """Async-iterable socket double with the ``websockets`` connection surface."""

    def __init__(self, url):
        self.url = url
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self.close_reason = ""
        self._incoming: asyncio.Queue = asyncio.Queue()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=""):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(_CLOSED)

    def push(self, frame_type, data=None):
        self._incoming.put_nowait(json.dumps({"type": frame_type, "data": data or {}}))

    def push_raw(self, raw):
        self._incoming.put_nowait(raw)

    def drop(self, code=1006):
        """Simulate the server side going away."""
        self.close_code = code
        self._incoming.put_nowait(_CLOSED)


class FakeConnector:
    """Connector double recording each attempt and the loop time it happened."""

    def __init__(self):
        self.sockets: list[FakeSocket] = []
        self.attempt_times: list[float] = []
        self.refuse = 0

    async def __call__(self, url):
        self.attempt_times.append(asyncio.get_running_loop().time())
        if self.refuse:
            self.refuse -= 1
            raise OSError("connection refused")
        socket = FakeSocket(url)
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


async def eventually(predicate, timeout=1.0):
    """Poll ``predicate`` until true, yielding to the loop between checks."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_api():
    return FakeRefinerApi()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def auth():
    return StaticAuthProvider("u1")


@pytest_asyncio.fixture
async def store(fake_api, connector, auth):
    """A ClientStore wired to the fake API and fake sockets, with short timers."""
    client_store = create_store(
        auth,
        gateway_url="http://gateway.test",
        ws_url="ws://backend.test",
        http_transport=fake_api.transport(),
        connector=connector,
        reconnect_delay=0.05,
        typing_timeout=0.05,
    )
    yield client_store
    await client_store.aclose()
