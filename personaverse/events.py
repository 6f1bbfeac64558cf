"""
Outbound collaborators: event sink, cache refresh hook and broadcast hook.

The engine only produces notifications; delivery belongs to these
interfaces. Implementations are injected into the Orchestrator, and every
call is made after the tick's state has been persisted. A failing sink or
hook is logged by the orchestrator and never rolls a tick back.

Included implementations:
- InMemoryEventSink: keeps published events in a list (tests, embedding)
- JsonlEventSink: appends one JSON line per event to a file
- NullEventSink: discards everything
- CallbackBroadcastHook: adapts plain callables (sync or async)
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .schemas import WorldSnapshot, utc_now


class EventSink(ABC):
    """Destination for lifecycle notifications, addressed by routing key."""

    async def initialize(self) -> None:
        """Open connections or files. Optional."""

    async def close(self) -> None:
        """Release resources. Optional."""

    @abstractmethod
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        """
        Publish one event.

        Args:
            event_type: Routing key (e.g. "particle.merged")
            payload: JSON-compatible event body

        Raises:
            Exception: If delivery fails (the caller logs and moves on)
        """


class InMemoryEventSink(EventSink):
    """Collects published events in order."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]


class JsonlEventSink(EventSink):
    """Append-only JSON Lines log of published events.

    Each line is ``{"event_type": ..., "published_at": ..., "payload": {...}}``.
    File I/O runs in a worker thread so publishing never blocks the loop.
    """

    def __init__(self, path: Union[Path, str] = "universe_data/events.jsonl") -> None:
        self.path = Path(path)

    async def initialize(self) -> None:
        await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        record = {
            "event_type": event_type,
            "published_at": utc_now().isoformat(),
            "payload": payload,
        }

        def _append() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record))
                handle.write("\n")

        await asyncio.to_thread(_append)


class NullEventSink(EventSink):
    """Drops every event."""

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        return None


class CacheRefreshHook(ABC):
    """Invalidates any cached view of the active population after a tick."""

    @abstractmethod
    async def invalidate_active_particles_view(self) -> None:
        pass


class NoopCacheRefreshHook(CacheRefreshHook):
    async def invalidate_active_particles_view(self) -> None:
        return None


class BroadcastHook(ABC):
    """Pushes each tick's snapshot to connected observers."""

    @abstractmethod
    async def push_snapshot(self, snapshot: WorldSnapshot) -> None:
        pass


class NoopBroadcastHook(BroadcastHook):
    async def push_snapshot(self, snapshot: WorldSnapshot) -> None:
        return None


SnapshotCallback = Callable[[WorldSnapshot], Optional[Awaitable[None]]]


class CallbackBroadcastHook(BroadcastHook):
    """Broadcast to plain callables; coroutine functions are awaited."""

    def __init__(self, *callbacks: SnapshotCallback) -> None:
        self.callbacks: List[SnapshotCallback] = list(callbacks)

    def subscribe(self, callback: SnapshotCallback) -> None:
        self.callbacks.append(callback)

    async def push_snapshot(self, snapshot: WorldSnapshot) -> None:
        for callback in self.callbacks:
            result = callback(snapshot)
            if inspect.isawaitable(result):
                await result
