"""Factory for isolated client stores."""

import asyncio
import logging
from typing import Optional

import httpx

from .api import GatewayClient
from .config import get_backend_ws_url, get_gateway_url
from .provider import AuthProvider
from .sessions import SessionStore
from .transport import DEFAULT_RECONNECT_DELAY, Connector
from .workspaces import DEFAULT_TYPING_TIMEOUT, WorkspaceStore

logger = logging.getLogger(__name__)


class ClientStore:
    """Session and workspace state for one signed-in client.

    Construct through ``create_store``; instances share nothing, so tests
    and multi-account shells can hold several side by side.
    """

    def __init__(self, auth: AuthProvider, api: GatewayClient, sessions: SessionStore, workspaces: WorkspaceStore):
        self.auth = auth
        self.api = api
        self.sessions = sessions
        self.workspaces = workspaces

    async def reload(self) -> None:
        """Call after the provider's identity changes."""
        logger.info("Loading client state for user %s", self.auth.get_user_id())
        await asyncio.gather(self.sessions.load(), self.workspaces.load())

    async def aclose(self) -> None:
        await self.workspaces.disconnect()
        await self.api.aclose()

    async def __aenter__(self) -> "ClientStore":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def create_store(
    auth_provider: AuthProvider,
    *,
    gateway_url: Optional[str] = None,
    ws_url: Optional[str] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    connector: Optional[Connector] = None,
    auto_connect: bool = True,
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    typing_timeout: float = DEFAULT_TYPING_TIMEOUT,
) -> ClientStore:
    """Build a fresh ``ClientStore`` wired to the gateway and the WebSocket backend."""
    api = GatewayClient(gateway_url or get_gateway_url(), transport=http_transport)
    sessions = SessionStore(api, auth_provider)
    workspaces = WorkspaceStore(
        api,
        auth_provider,
        ws_url or get_backend_ws_url(),
        connector=connector,
        auto_connect=auto_connect,
        reconnect_delay=reconnect_delay,
        typing_timeout=typing_timeout,
    )
    return ClientStore(auth_provider, api, sessions, workspaces)
