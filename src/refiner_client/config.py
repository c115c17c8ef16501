"""Environment-driven configuration for the gateway and the client stores."""

import os
from typing import Optional

DEFAULT_BACKEND_WS_URL = "ws://localhost:8000"
DEFAULT_GATEWAY_URL = "http://127.0.0.1:8080"


def get_backend_url() -> Optional[str]:
    """Return the backend base URL without a trailing slash, or None if unset."""
    url = os.environ.get("REFINER_BACKEND_URL") or os.environ.get("NEXT_PUBLIC_REFINER_BACKEND_URL")
    if not url:
        return None
    return url.rstrip("/")


def get_backend_api_key() -> str:
    """Return the API key attached to every upstream request."""
    return os.environ.get("BACKEND_API_KEY", "")


def get_backend_ws_url() -> str:
    """Return the WebSocket base URL.

    WebSockets go straight to the backend, never through the gateway.
    """
    env = os.environ.get("REFINER_BACKEND_WS_URL")
    if env:
        return env.rstrip("/")
    return DEFAULT_BACKEND_WS_URL


def get_gateway_url() -> str:
    """Return the base URL the client stores use to reach the gateway."""
    return os.environ.get("REFINER_GATEWAY_URL", DEFAULT_GATEWAY_URL).rstrip("/")
