"""Client-side session/workspace state and proxy gateway for the refinement backend."""

from .provider import AuthProvider, StaticAuthProvider
from .store import ClientStore, create_store

__all__ = ["AuthProvider", "ClientStore", "StaticAuthProvider", "create_store"]
