"""
Extraction Progress Reporting.

Stage-index notifications for UIs polling or streaming a card's extraction.
Delivery is best-effort: the pipeline swallows notifier failures.
"""

import asyncio
import contextlib
from collections import OrderedDict
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Protocol


class ProgressStage(IntEnum):
    """Stage indices reported to the UI."""

    VALIDATING = 0
    PATTERNS = 1
    LINKING = 2
    LLM = 3
    PERSISTING = 4
    COMPLETE = 5


class ProgressNotifier(Protocol):
    """Receiver of progress and completion notifications."""

    async def notify_progress(self, card_id: str, stage_index: int) -> None: ...

    async def notify_complete(self, card_id: str, counts: dict[str, int]) -> None: ...


@dataclass
class ProgressEvent:
    """A single progress update."""

    card_id: str
    stage_index: int
    counts: dict[str, int] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def completed(self) -> bool:
        return self.counts is not None

    @property
    def heartbeat(self) -> bool:
        return self.stage_index < 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "card_id": self.card_id,
            "stage_index": self.stage_index,
            "counts": self.counts,
            "completed": self.completed,
            "timestamp": self.timestamp,
        }


class ProgressBroadcaster:
    """
    Keeps progress history and fans updates out to subscribers.

    History holds the latest run of the ``max_cards`` most recently active
    cards; a VALIDATING event starts a new run. Each subscriber gets its own
    asyncio.Queue; the stream ends after the completion event.
    """

    def __init__(self, heartbeat_interval: float = 30.0, max_cards: int = 1000) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._max_cards = max_cards
        self._history: OrderedDict[str, list[ProgressEvent]] = OrderedDict()
        self._subscribers: dict[str, list[asyncio.Queue[ProgressEvent]]] = {}

    def history(self, card_id: str) -> list[ProgressEvent]:
        """Progress updates of the card's latest run."""
        return list(self._history.get(card_id, []))

    def clear(self, card_id: str) -> None:
        self._history.pop(card_id, None)

    async def notify_progress(self, card_id: str, stage_index: int) -> None:
        self._broadcast(ProgressEvent(card_id=card_id, stage_index=stage_index))

    async def notify_complete(self, card_id: str, counts: dict[str, int]) -> None:
        self._broadcast(ProgressEvent(
            card_id=card_id,
            stage_index=ProgressStage.COMPLETE,
            counts=dict(counts),
        ))

    def _broadcast(self, event: ProgressEvent) -> None:
        if event.stage_index == ProgressStage.VALIDATING:
            self._history[event.card_id] = []
        self._history.setdefault(event.card_id, []).append(event)
        self._history.move_to_end(event.card_id)
        while len(self._history) > self._max_cards:
            self._history.popitem(last=False)
        for queue in self._subscribers.get(event.card_id, []):
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(event)

    async def subscribe(self, card_id: str) -> AsyncGenerator[ProgressEvent, None]:
        """Stream progress for a card until completion, with heartbeats while idle."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._subscribers.setdefault(card_id, []).append(queue)

        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self._heartbeat_interval)
                except TimeoutError:
                    yield ProgressEvent(card_id=card_id, stage_index=-1)
                    continue
                yield event
                if event.completed:
                    break
        finally:
            subscribers = self._subscribers.get(card_id, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(card_id, None)

    def subscriber_count(self, card_id: str) -> int:
        return len(self._subscribers.get(card_id, []))
