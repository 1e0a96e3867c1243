# roomsync/services/backend.py

from __future__ import annotations

import abc
import secrets
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

# Sentinel replaced by the backend with its own clock (milliseconds) at write time
SERVER_TIMESTAMP: Dict[str, str] = {".sv": "timestamp"}

CHILD_ADDED = "child_added"
CHILD_CHANGED = "child_changed"
CHILD_REMOVED = "child_removed"
VALUE = "value"

EVENTS = (CHILD_ADDED, CHILD_CHANGED, CHILD_REMOVED, VALUE)

_PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def now_ms() -> int:
    return int(time.time() * 1000)


def push_id(timestamp: Optional[int] = None) -> str:
    """
    Generate a unique, chronologically sortable key for an appended child.

    The first 8 characters encode the millisecond timestamp, the remaining
    12 are random, so keys created later sort after earlier ones.
    """
    stamp = now_ms() if timestamp is None else timestamp
    time_chars = []
    for _ in range(8):
        time_chars.append(_PUSH_CHARS[stamp % 64])
        stamp //= 64
    random_chars = "".join(secrets.choice(_PUSH_CHARS) for _ in range(12))
    return "".join(reversed(time_chars)) + random_chars


def resolve_server_values(value: Any, timestamp: int) -> Any:
    """Replace every SERVER_TIMESTAMP sentinel inside ``value``."""
    if value == SERVER_TIMESTAMP:
        return timestamp
    if isinstance(value, dict):
        return {k: resolve_server_values(v, timestamp) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_values(v, timestamp) for v in value]
    return value


def split_path(path: str) -> Tuple[str, str]:
    """Split ``"a/b/c"`` into ``("a/b", "c")``."""
    path = path.strip("/")
    if "/" not in path:
        return "", path
    parent, key = path.rsplit("/", 1)
    return parent, key


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


# ============================================================================
# SNAPSHOTS AND QUERIES
# ============================================================================

@dataclass(frozen=True)
class Snapshot:
    """A (key, value) pair delivered by a read or a listener event."""

    key: str
    value: Any = None

    def exists(self) -> bool:
        return self.value is not None

    def children(self) -> Iterator["Snapshot"]:
        """Iterate child snapshots in the order the backend returned them."""
        if isinstance(self.value, dict):
            for key, value in self.value.items():
                yield Snapshot(key, value)


Callback = Callable[[Snapshot], None]


@dataclass(frozen=True)
class QuerySpec:
    """
    Ordering and range constraints applied to the children of a path.

    When ``order_by`` is set, children are ordered by that field (ties
    broken by key) and ``start``/``end`` are inclusive bounds on it.
    Without it children are ordered by key and the bounds are ignored.
    ``limit_last`` keeps only the last N children of the ordered range.
    """

    order_by: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    limit_last: Optional[int] = None

    def is_default(self) -> bool:
        return self == QuerySpec()

    def sort_value(self, value: Any) -> Any:
        if self.order_by is None or not isinstance(value, dict):
            return None
        return value.get(self.order_by)

    def matches(self, value: Any) -> bool:
        """Range check only, the limit applies to whole result sets."""
        if self.order_by is None:
            return True
        field = self.sort_value(value)
        if self.start is not None and (field is None or field < self.start):
            return False
        if self.end is not None and (field is None or field > self.end):
            return False
        return True

    def select(self, children: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not children:
            return {}
        items = [(k, v) for k, v in children.items() if self.matches(v)]
        if self.order_by is not None:
            # Children without the field sort first
            items.sort(key=lambda kv: (self.sort_value(kv[1]) is not None,
                                       self.sort_value(kv[1]) or 0, kv[0]))
        else:
            items.sort(key=lambda kv: kv[0])
        if self.limit_last is not None:
            items = items[-self.limit_last:] if self.limit_last > 0 else []
        return dict(items)


class Query:
    """An immutable view over the children of a path."""

    def __init__(self, backend: "LogBackend", path: str, spec: Optional[QuerySpec] = None):
        self.backend = backend
        self.path = path.strip("/")
        self.spec = spec or QuerySpec()

    def _with(self, **changes: Any) -> "Query":
        return Query(self.backend, self.path, replace(self.spec, **changes))

    def order_by_child(self, field: str) -> "Query":
        return self._with(order_by=field)

    def start_at(self, value: float) -> "Query":
        return self._with(start=value)

    def end_at(self, value: float) -> "Query":
        return self._with(end=value)

    def limit_to_last(self, count: int) -> "Query":
        return self._with(limit_last=count)

    async def get(self) -> Snapshot:
        """One-shot read of the current value."""
        return await self.backend.read(self.path, self.spec)

    async def on(self, event: str, callback: Callback) -> None:
        """
        Attach a persistent listener.

        ``child_added`` listeners first receive every existing child in
        the query range, ``value`` listeners receive the current value,
        then both receive live changes until ``off()``.
        """
        if event not in EVENTS:
            raise ValueError(f"Unknown event type: {event}")
        await self.backend.listen(self.path, self.spec, event, callback)

    def off(self) -> None:
        """Detach every listener attached at this path, whatever the query."""
        self.backend.unlisten(self.path)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.path!r} {self.spec}>"


class Reference(Query):
    """A writable location in the backend tree."""

    @property
    def key(self) -> str:
        return split_path(self.path)[1]

    @property
    def parent(self) -> "Reference":
        return Reference(self.backend, split_path(self.path)[0])

    def child(self, key: str) -> "Reference":
        return Reference(self.backend, join_path(self.path, key))

    def push(self) -> "Reference":
        """Reference to a new, unique child key. Nothing is written yet."""
        return self.child(push_id())

    async def set(self, value: Any) -> None:
        if value is None:
            await self.backend.delete(self.path)
        else:
            await self.backend.write(self.path, value)

    async def update(self, values: Dict[str, Any]) -> None:
        await self.backend.merge(self.path, values)

    async def remove(self) -> None:
        await self.backend.delete(self.path)

    def on_disconnect_remove(self) -> None:
        """Ask the backend to delete this path when the connection drops."""
        self.backend.register_disconnect_remove(self.path)


# ============================================================================
# BACKEND CONTRACT
# ============================================================================

class LogBackend(abc.ABC):
    """
    Contract of the ordered append-log service.

    Implementations:
        - MemoryBackend: in-process tree (tests, local development)
        - RedisBackend: hashes per collection, sorted-set time index,
          pub/sub channels for live events

    Every coroutine raises ``BackendError`` on failure.
    """

    name = "abstract"

    def reference(self, path: str = "") -> Reference:
        return Reference(self, path)

    @abc.abstractmethod
    async def server_time(self) -> int:
        """Backend clock in milliseconds."""

    @abc.abstractmethod
    async def read(self, path: str, spec: QuerySpec) -> Snapshot:
        ...

    @abc.abstractmethod
    async def write(self, path: str, value: Any) -> None:
        ...

    @abc.abstractmethod
    async def merge(self, path: str, values: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abc.abstractmethod
    async def listen(self, path: str, spec: QuerySpec, event: str, callback: Callback) -> None:
        ...

    @abc.abstractmethod
    def unlisten(self, path: str) -> None:
        ...

    @abc.abstractmethod
    def register_disconnect_remove(self, path: str) -> None:
        ...

    async def connect(self) -> None:
        """Open connections. No-op for backends that need none."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Run disconnect cleanups and release connections."""
