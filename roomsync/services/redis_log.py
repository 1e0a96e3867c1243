# roomsync/services/redis_log.py
import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from roomsync.core.config import settings
from roomsync.core.exceptions import BackendError
from roomsync.services.backend import (
    CHILD_ADDED,
    CHILD_CHANGED,
    CHILD_REMOVED,
    VALUE,
    Callback,
    LogBackend,
    QuerySpec,
    Snapshot,
    SERVER_TIMESTAMP,
    resolve_server_values,
    split_path,
)

logger = logging.getLogger(__name__)

# Children carrying this numeric field are also indexed in a sorted set
INDEXED_FIELD = "time"


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        logger.error(f"Redis {operation} failed: {e}")
        raise BackendError(f"{operation} failed: {e}") from e


def _contains_server_value(value: Any) -> bool:
    if value == SERVER_TIMESTAMP:
        return True
    if isinstance(value, dict):
        return any(_contains_server_value(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_server_value(v) for v in value)
    return False


class RedisBackend(LogBackend):
    """
    Append-log backend on Redis.

    Storage layout (``prefix`` defaults to "roomsync:"):
        {prefix}{parent}              hash, field = child key, value = JSON
        {prefix}{parent}#time         sorted set of child keys scored by "time"
        channel {prefix}{parent}      pub/sub events for the children of parent

    A value is always stored in the hash of its parent path, so
    ``rooms/r1/meta`` lives in hash ``rooms/r1`` under field ``meta`` and
    the messages of a room are the fields of hash ``rooms/r1/messages``.
    ``update()`` merges into the stored JSON object of its path.

    Event payloads published on a parent channel:
        {"event": "child_added" | "child_changed" | "child_removed",
         "key": "<child key>", "value": <child value>}

    Disconnect removals registered with ``on_disconnect_remove()`` run on
    ``close()``.
    """

    name = "redis"

    def __init__(self, host: str = "localhost", port: int = 6379, prefix: Optional[str] = None):
        self.host = host
        self.port = port
        self.prefix = settings.REDIS_KEY_PREFIX if prefix is None else prefix
        self.client = None
        self.pubsub = None
        self.access_key = settings.REDIS_ACCESS_KEY
        self._listeners: Dict[str, List[tuple]] = {}
        self._channels: Set[str] = set()
        self._on_disconnect: Set[str] = set()
        self._pump: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self):
        """Establish async connection to Redis."""
        scheme = "rediss" if settings.REDIS_SSL else "redis"
        auth = f":{self.access_key}@" if self.access_key else ""
        self.client = redis.from_url(
            f"{scheme}://{auth}{self.host}:{self.port}",
            decode_responses=True
        )
        with _translate_errors("connect"):
            await self.client.ping()
        self.pubsub = self.client.pubsub()
        logger.info(f"✓ Connected to Redis at {self.host}:{self.port}")

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------

    def _key(self, path: str) -> str:
        return f"{self.prefix}{path}"

    def _index(self, path: str) -> str:
        return f"{self.prefix}{path}#{INDEXED_FIELD}"

    def _channel(self, path: str) -> str:
        return f"{self.prefix}{path}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def server_time(self) -> int:
        with _translate_errors("TIME"):
            seconds, micros = await self.client.time()
        return int(seconds) * 1000 + int(micros) // 1000

    async def _read_children(self, path: str, spec: QuerySpec) -> Dict[str, Any]:
        if spec.order_by == INDEXED_FIELD and spec.limit_last is not None:
            low = "-inf" if spec.start is None else spec.start
            high = "+inf" if spec.end is None else spec.end
            members = await self.client.zrevrangebyscore(
                self._index(path), high, low, start=0, num=spec.limit_last
            )
            if not members:
                return {}
            members = list(reversed(members))
            raw_values = await self.client.hmget(self._key(path), members)
            children = {m: json.loads(v) for m, v in zip(members, raw_values) if v is not None}
            return spec.select(children)

        raw = await self.client.hgetall(self._key(path))
        children = {k: json.loads(v) for k, v in raw.items()}
        return spec.select(children)

    async def read(self, path: str, spec: QuerySpec) -> Snapshot:
        parent, key = split_path(path)
        with _translate_errors(f"read '{path}'"):
            if spec.is_default():
                raw = await self.client.hget(self._key(parent), key)
                if raw is not None:
                    return Snapshot(key, json.loads(raw))
            children = await self._read_children(path, spec)
        return Snapshot(key, children or None)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _resolve(self, value: Any) -> Any:
        if _contains_server_value(value):
            return resolve_server_values(value, await self.server_time())
        return value

    async def _store(self, path: str, value: Any) -> None:
        parent, key = split_path(path)
        payload = json.dumps(value)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(parent), key, payload)
            if isinstance(value, dict) and isinstance(value.get(INDEXED_FIELD), (int, float)):
                pipe.zadd(self._index(parent), {key: value[INDEXED_FIELD]})
            results = await pipe.execute()
        event = CHILD_ADDED if results[0] else CHILD_CHANGED
        await self._publish(parent, event, key, value)

    async def write(self, path: str, value: Any) -> None:
        with _translate_errors(f"write '{path}'"):
            await self._store(path, await self._resolve(value))

    async def merge(self, path: str, values: Dict[str, Any]) -> None:
        parent, key = split_path(path)
        with _translate_errors(f"update '{path}'"):
            resolved = await self._resolve(values)
            raw = await self.client.hget(self._key(parent), key)
            current = json.loads(raw) if raw is not None else {}
            if not isinstance(current, dict):
                current = {}
            for field, value in resolved.items():
                if value is None:
                    current.pop(field, None)
                else:
                    current[field] = value
            if current:
                await self._store(path, current)
            elif raw is not None:
                await self._remove(path)

    async def _remove(self, path: str) -> None:
        parent, key = split_path(path)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hget(self._key(parent), key)
            pipe.hdel(self._key(parent), key)
            pipe.zrem(self._index(parent), key)
            pipe.delete(self._key(path), self._index(path))
            old, removed, _, _ = await pipe.execute()
        if removed:
            await self._publish(parent, CHILD_REMOVED, key, json.loads(old))

    async def delete(self, path: str) -> None:
        with _translate_errors(f"remove '{path}'"):
            await self._remove(path)

    async def _publish(self, parent: str, event: str, key: str, value: Any) -> None:
        message = {"event": event, "key": key, "value": value}
        await self.client.publish(self._channel(parent), json.dumps(message))

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    async def listen(self, path: str, spec: QuerySpec, event: str, callback: Callback) -> None:
        path = path.strip("/")
        # Value listeners watch the field that holds the value in the parent hash
        channel = self._channel(split_path(path)[0] if event == VALUE else path)
        self._listeners.setdefault(channel, []).append((path, spec, event, callback))

        with _translate_errors(f"subscribe '{path}'"):
            if channel not in self._channels:
                await self.pubsub.subscribe(channel)
                self._channels.add(channel)
                logger.info(f"✓ Subscribed to Redis channel '{channel}'")
            self._ensure_pump()

            # Subscribe first, then catch up: an event racing the read is
            # delivered twice rather than lost
            if event == VALUE:
                snapshot = await self.read(path, QuerySpec())
                callback(snapshot)
            elif event == CHILD_ADDED:
                snapshot = await self.read(path, spec)
                for child in snapshot.children():
                    callback(child)

    def _ensure_pump(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._listen_loop())

    async def _listen_loop(self) -> None:
        """Route pub/sub events to the listeners attached to each channel."""
        async for message in self.pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                data = json.loads(message["data"])
                for path, spec, event, callback in list(self._listeners.get(message["channel"], ())):
                    self._deliver(path, spec, event, callback, data)
            except Exception as e:
                logger.error(f"Error processing Redis event: {e}")

    @staticmethod
    def _deliver(path: str, spec: QuerySpec, event: str, callback: Callback, data: dict) -> None:
        key, value = data.get("key"), data.get("value")
        if event == VALUE:
            if key == split_path(path)[1]:
                callback(Snapshot(key, None if data.get("event") == CHILD_REMOVED else value))
            return
        if data.get("event") == event and spec.matches(value):
            callback(Snapshot(key, value))

    def unlisten(self, path: str) -> None:
        path = path.strip("/")
        for channel, listeners in list(self._listeners.items()):
            remaining = [l for l in listeners if l[0] != path]
            if remaining:
                self._listeners[channel] = remaining
                continue
            del self._listeners[channel]
            if channel in self._channels and self.pubsub is not None:
                self._channels.discard(channel)
                task = asyncio.ensure_future(self.pubsub.unsubscribe(channel))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def register_disconnect_remove(self, path: str) -> None:
        self._on_disconnect.add(path.strip("/"))

    async def close(self):
        """Run disconnect removals, then close connections."""
        paths, self._on_disconnect = self._on_disconnect, set()
        for path in paths:
            try:
                await self.delete(path)
            except BackendError:
                logger.warning(f"Could not remove ephemeral node '{path}' on close")
        if self._pump is not None:
            self._pump.cancel()
        if self.pubsub:
            await self.pubsub.unsubscribe()
            await self.pubsub.aclose()
        if self.client:
            await self.client.aclose()
        logger.info("Redis connection closed")
