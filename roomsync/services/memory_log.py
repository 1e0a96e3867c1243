# roomsync/services/memory_log.py

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from roomsync.services.backend import (
    CHILD_ADDED,
    CHILD_CHANGED,
    CHILD_REMOVED,
    VALUE,
    Callback,
    LogBackend,
    QuerySpec,
    Snapshot,
    now_ms,
    resolve_server_values,
    split_path,
)

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Listener:
    path: str
    spec: QuerySpec
    event: str
    callback: Callback
    active: bool = True


# ============================================================================
# IN-PROCESS APPEND-LOG
# ============================================================================

class MemoryBackend(LogBackend):
    """
    Append-log backend held in a nested dict inside the current process.

    Used by the test-suite and for running the service without Redis.
    Every coroutine yields to the event loop once, so callers observe the
    same suspension points they would against a remote backend. Listener
    callbacks run synchronously when the write that triggers them lands.

    Attributes:
        clock: callable returning the backend time in milliseconds, used to
               resolve SERVER_TIMESTAMP sentinels
    """

    name = "memory"

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self.clock = clock or now_ms
        self._root: Dict[str, Any] = {}
        self._listeners: List[_Listener] = []
        self._on_disconnect: Set[str] = set()

    # ------------------------------------------------------------------
    # Tree helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _segments(path: str) -> List[str]:
        return [s for s in path.strip("/").split("/") if s]

    def _lookup(self, path: str) -> Any:
        node: Any = self._root
        for segment in self._segments(path):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def _assign(self, path: str, value: Any) -> None:
        segments = self._segments(path)
        if not segments:
            self._root = value if isinstance(value, dict) else {}
            return

        if value is None:
            trail = [self._root]
            node: Any = self._root
            for segment in segments[:-1]:
                if not isinstance(node, dict) or segment not in node:
                    return
                node = node[segment]
                trail.append(node)
            if isinstance(node, dict):
                node.pop(segments[-1], None)
            # Prune empty parents, a collection without children does not exist
            for depth in range(len(segments) - 1, 0, -1):
                if trail[depth] == {}:
                    trail[depth - 1].pop(segments[depth - 1], None)
                else:
                    break
            return

        node = self._root
        for segment in segments[:-1]:
            if not isinstance(node.get(segment), dict):
                node[segment] = {}
            node = node[segment]
        node[segments[-1]] = value

    def _observe(self, listener: _Listener) -> Any:
        current = self._lookup(listener.path)
        if listener.event == VALUE:
            return copy.deepcopy(current)
        return copy.deepcopy(current) if isinstance(current, dict) else {}

    def _mutate(self, apply: Callable[[], None]) -> None:
        listeners = list(self._listeners)
        before = [self._observe(listener) for listener in listeners]
        apply()
        for listener, old in zip(listeners, before):
            if listener.active:
                self._dispatch(listener, old)

    def _dispatch(self, listener: _Listener, old: Any) -> None:
        new = self._observe(listener)
        if listener.event == VALUE:
            if new != old:
                self._call(listener, Snapshot(split_path(listener.path)[1], new))
            return

        if listener.event == CHILD_ADDED:
            keys = [k for k in new if k not in old]
            events = [Snapshot(k, new[k]) for k in keys]
        elif listener.event == CHILD_REMOVED:
            events = [Snapshot(k, v) for k, v in old.items() if k not in new]
        else:
            events = [Snapshot(k, new[k]) for k in new if k in old and new[k] != old[k]]

        for snapshot in events:
            if listener.active and listener.spec.matches(snapshot.value):
                self._call(listener, snapshot)

    @staticmethod
    def _call(listener: _Listener, snapshot: Snapshot) -> None:
        try:
            listener.callback(snapshot)
        except Exception:
            logger.exception("Listener on '%s' failed for %s", listener.path, listener.event)

    # ------------------------------------------------------------------
    # LogBackend
    # ------------------------------------------------------------------

    async def server_time(self) -> int:
        await asyncio.sleep(0)
        return self.clock()

    async def read(self, path: str, spec: QuerySpec) -> Snapshot:
        await asyncio.sleep(0)
        value = copy.deepcopy(self._lookup(path))
        if isinstance(value, dict) and not spec.is_default():
            value = spec.select(value) or None
        return Snapshot(split_path(path)[1], value)

    async def write(self, path: str, value: Any) -> None:
        await asyncio.sleep(0)
        resolved = resolve_server_values(copy.deepcopy(value), self.clock())
        self._mutate(lambda: self._assign(path, resolved))

    async def merge(self, path: str, values: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        resolved = resolve_server_values(copy.deepcopy(values), self.clock())

        def apply() -> None:
            for key, value in resolved.items():
                self._assign(f"{path}/{key}", value)

        self._mutate(apply)

    async def delete(self, path: str) -> None:
        await asyncio.sleep(0)
        self._mutate(lambda: self._assign(path, None))

    async def listen(self, path: str, spec: QuerySpec, event: str, callback: Callback) -> None:
        await asyncio.sleep(0)
        listener = _Listener(path.strip("/"), spec, event, callback)
        self._listeners.append(listener)

        current = copy.deepcopy(self._lookup(listener.path))
        if event == VALUE:
            self._call(listener, Snapshot(split_path(listener.path)[1], current))
        elif event == CHILD_ADDED and isinstance(current, dict):
            for key, value in spec.select(current).items():
                if not listener.active:
                    break
                self._call(listener, Snapshot(key, value))

    def unlisten(self, path: str) -> None:
        path = path.strip("/")
        for listener in self._listeners:
            if listener.path == path:
                listener.active = False
        self._listeners = [l for l in self._listeners if l.active]

    def register_disconnect_remove(self, path: str) -> None:
        self._on_disconnect.add(path.strip("/"))

    def listener_count(self, path: Optional[str] = None) -> int:
        """Number of attached listeners, optionally only those at ``path``."""
        if path is None:
            return len(self._listeners)
        path = path.strip("/")
        return sum(1 for l in self._listeners if l.path == path)

    async def disconnect(self) -> None:
        """Simulate a dropped connection: run registered disconnect removals."""
        paths, self._on_disconnect = self._on_disconnect, set()
        for path in sorted(paths):
            await self.delete(path)
        logger.info("Memory backend disconnected, removed %d ephemeral nodes", len(paths))

    async def close(self) -> None:
        await self.disconnect()
        for listener in self._listeners:
            listener.active = False
        self._listeners.clear()
