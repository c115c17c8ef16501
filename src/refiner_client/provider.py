"""Identity providers consumed by the client stores."""

from abc import ABC, abstractmethod
from typing import Optional


class AuthProvider(ABC):
    """Base class for sources of the signed-in user's identity.

    Stores read the user id at call time, so a provider may change its
    answer between calls; callers then trigger ``ClientStore.reload()``.
    """

    @abstractmethod
    def get_user_id(self) -> Optional[str]:
        """Return the current user id, or None when nobody is signed in."""
        ...


class StaticAuthProvider(AuthProvider):
    """Provider holding a user id set by the caller."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    def get_user_id(self) -> Optional[str]:
        return self.user_id

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id

    def sign_out(self) -> None:
        self.user_id = None
