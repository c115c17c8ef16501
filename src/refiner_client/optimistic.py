"""Apply-then-confirm helper for optimistic store mutations."""

from typing import Awaitable, Callable, Optional, TypeVar

from .api import ApiError

T = TypeVar("T")


async def optimistic(
    apply: Callable[[], None],
    commit: Callable[[], Awaitable[T]],
    revert: Callable[[], None],
    confirm: Optional[Callable[[T], None]] = None,
) -> T:
    """Run ``apply`` now, then ``commit`` against the server.

    On success ``confirm`` receives the server result and replaces the
    provisional state. On ``ApiError`` the provisional state is reverted
    and the error re-raised for the caller to record.
    """
    apply()
    try:
        result = await commit()
    except ApiError:
        revert()
        raise
    if confirm is not None:
        confirm(result)
    return result
