"""
Device event stream.

Lets a registered device hold a Server-Sent Events connection and be told
when the document behind its whitelist URL changes, instead of waiting
for its next poll. A change is either a catalog reload or a schedule
boundary moving the classroom onto another group. The stream ends as soon
as the device's token stops resolving, e.g. after rotation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from fastapi.concurrency import run_in_threadpool

if TYPE_CHECKING:
    from classgate.policy.parser import CatalogStore
    from classgate.registry.database import DeviceRegistry


logger = logging.getLogger(__name__)

KEEP_ALIVE_FRAME = ": keep-alive\n\n"


class StreamEventType(str, Enum):
    """Events sent on the device stream."""

    CONNECTED = "connected"
    WHITELIST_CHANGED = "whitelist-changed"


@dataclass
class StreamEvent:
    """
    One event on the device stream.

    Attributes:
        event_type: Type of event
        data: Extra fields merged into the payload
    """

    event_type: StreamEventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        """Serialize as a single ``data:`` frame."""
        payload = {"event": self.event_type.value, **self.data}
        return f"data: {json.dumps(payload)}\n\n"


@dataclass(frozen=True)
class DeviceState:
    """
    What a streaming device currently receives.

    Attributes:
        hostname: Device hostname
        classroom_id: Classroom the device is registered in
        group_id: Group in force, None when the device gets the sentinel
        generation: Catalog load counter the state was computed from
    """

    hostname: str
    classroom_id: str
    group_id: str | None
    generation: int


class DeviceEventStreamer:
    """
    Produces event streams for devices.

    Each open stream re-evaluates its device every ``poll_seconds`` and
    emits ``whitelist-changed`` when the active group or the catalog
    generation moved. Idle streams get a keep-alive comment every
    ``keep_alive_seconds``.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        catalog_store: CatalogStore,
        clock: Callable[[], datetime] = datetime.now,
        poll_seconds: float = 5.0,
        keep_alive_seconds: float = 30.0,
    ) -> None:
        self.registry = registry
        self.catalog_store = catalog_store
        self.clock = clock
        self.poll_seconds = poll_seconds
        self.keep_alive_seconds = keep_alive_seconds
        self._lock = threading.Lock()
        self._open = 0

    @property
    def connection_count(self) -> int:
        """Number of streams currently open."""
        return self._open

    def snapshot(self, token_hash: str) -> DeviceState | None:
        """
        Evaluate the device holding ``token_hash``.

        Returns:
            Current state, or None if no device holds the token
        """
        device = self.registry.get_device_by_token_hash(token_hash)
        if device is None:
            return None

        catalog = self.catalog_store.catalog
        generation = self.catalog_store.generation
        classroom = catalog.get_classroom(device.classroom_id)
        group_id = classroom.active_group_id(self.clock()) if classroom else None
        if group_id is not None and catalog.get_group(group_id) is None:
            group_id = None

        return DeviceState(
            hostname=device.hostname,
            classroom_id=device.classroom_id,
            group_id=group_id,
            generation=generation,
        )

    async def stream(self, token_hash: str, state: DeviceState) -> AsyncIterator[str]:
        """
        Yield SSE frames for one device until its token stops resolving.

        Args:
            token_hash: Hash of the device token the stream was opened with
            state: State evaluated when the stream was accepted
        """
        with self._lock:
            self._open += 1
        logger.info(
            "Event stream opened for %s (group %s, %d open)",
            state.hostname, state.group_id, self._open,
        )

        try:
            yield StreamEvent(
                StreamEventType.CONNECTED,
                {"groupId": state.group_id, "hostname": state.hostname},
            ).to_sse()
            last_write = time.monotonic()

            while True:
                await asyncio.sleep(self.poll_seconds)

                current = await run_in_threadpool(self.snapshot, token_hash)
                if current is None:
                    logger.info("Event stream for %s closed: token no longer valid", state.hostname)
                    return

                now = time.monotonic()
                if current.group_id != state.group_id or current.generation != state.generation:
                    state = current
                    last_write = now
                    yield StreamEvent(
                        StreamEventType.WHITELIST_CHANGED, {"groupId": current.group_id}
                    ).to_sse()
                elif now - last_write >= self.keep_alive_seconds:
                    last_write = now
                    yield KEEP_ALIVE_FRAME
        finally:
            with self._lock:
                self._open -= 1
            logger.info("Event stream for %s ended (%d open)", state.hostname, self._open)
