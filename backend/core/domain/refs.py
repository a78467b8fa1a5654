"""
References to remote objects.

The payment platform returns related objects either as a bare id or, when
expanded, as the full object. Every place that touches such a field goes
through ``ref_id`` or ``expand`` instead of inspecting the value directly.
"""

from collections.abc import Awaitable, Callable, Mapping
from typing import Any

RemoteObject = dict[str, Any]
Ref = str | Mapping[str, Any] | None


def ref_id(ref: Ref) -> str | None:
    """Return the id of a reference, whether it is expanded or not."""
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref or None
    return ref.get("id")


def is_expanded(ref: Ref) -> bool:
    return isinstance(ref, Mapping)


async def expand(
    ref: Ref,
    retrieve: Callable[[str], Awaitable[RemoteObject]],
) -> RemoteObject | None:
    """
    Resolve a reference to the full remote object.

    Args:
        ref: Id string, expanded object, or None
        retrieve: Coroutine function fetching the object by id

    Returns:
        The expanded object, or None when the reference is empty
    """
    if ref is None:
        return None
    if isinstance(ref, Mapping):
        return dict(ref)
    if not ref:
        return None
    return await retrieve(ref)
