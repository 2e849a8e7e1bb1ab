import contextvars
from contextlib import contextmanager
from typing import Any, Dict, Mapping

ALL = "$all"

# {name_scope: {event_scope: properties}}. Never mutated in place: every
# write builds a new mapping so copies taken by other contexts stay intact.
_context: contextvars.ContextVar[Dict[str, Dict[str, Dict[str, Any]]]] = (
    contextvars.ContextVar("hogclient_context", default={})
)


def set_context(name: str, context: Mapping[str, Any], event: str = ALL) -> None:
    """
    Merge `context` into the properties stored for `(name, event)`.

    The merge is shallow: a key in `context` replaces the stored value for that
    key as a whole, nested dicts included.

    Example:
        set_context(ALL, {"distinct_id": "user-1"})
        set_context("default", {"$plan": "pro"}, event="purchase")
    """
    current = _context.get()
    by_event = current.get(name, {})
    merged = {**by_event.get(event, {}), **context}
    _context.set({**current, name: {**by_event, event: merged}})


def get_context(name: str = ALL, event: str = ALL) -> Dict[str, Any]:
    """
    Properties visible to `event` for the `name` scope.

    Shared entries come first and the most specific entry wins:
    `(ALL, ALL)`, `(ALL, event)`, `(name, ALL)`, `(name, event)`.
    """
    current = _context.get()
    result: Dict[str, Any] = {}
    for scope in _unique((ALL, name)):
        by_event = current.get(scope, {})
        for event_scope in _unique((ALL, event)):
            result.update(by_event.get(event_scope, {}))
    return result


def clear_context() -> None:
    _context.set({})


@contextmanager
def new_context(fresh=False):
    """
    Isolate context changes made inside the `with` block.

    Args:
        fresh: Whether to start from an empty context (default: False).
               If False, the block sees everything set by its caller.

    Example:
        with new_context():
            set_context(ALL, {"request_id": "123"})
            client.capture("page_viewed")
    """
    token = _context.set({} if fresh else _context.get())
    try:
        yield
    finally:
        _context.reset(token)


def _unique(scopes):
    seen = []
    for scope in scopes:
        if scope not in seen:
            seen.append(scope)
    return seen
