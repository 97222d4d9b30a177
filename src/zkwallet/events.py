"""Status notifications for long-running wallet operations.

The presentation layer subscribes to an EventStream and renders each
StatusEvent as an incremental status line. Subscriptions are async
iterators and can be closed at any time.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


class InitState(str, Enum):
    """Session initialization stages."""

    CLIENT_INITIALIZING = "ClientInitializing"
    ACCOUNTLESS_READY = "AccountlessReady"
    ACCOUNT_INITIALIZING = "AccountInitializing"
    FULLY_READY = "FullyReady"
    LOCKED = "Locked"
    FAILED = "Failed"


class OperationStage(str, Enum):
    """Stages of a deposit, transfer or withdrawal."""

    AWAITING_READINESS = "AwaitingReadiness"
    FEE_ESTIMATING = "FeeEstimating"
    SUBMITTING = "Submitting"
    APPROVAL_SUBMITTED = "ApprovalSubmitted"
    JOB_SUBMITTED = "JobSubmitted"
    AWAITING_HASHES = "AwaitingHashes"
    HASH_RESOLVED = "HashResolved"
    JOB_FAILED = "JobFailed"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True)
class StatusEvent:
    """One status notification."""

    state: Union[InitState, OperationStage]
    message: str = ""
    operation: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_failure(self) -> bool:
        return self.state in (InitState.FAILED, OperationStage.FAILED, OperationStage.JOB_FAILED)


class Subscription:
    """Async iterator over events published after subscribing."""

    def __init__(self, stream: "EventStream", maxsize: int = 0):
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def _push(self, event: StatusEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Subscriber queue full, dropping event {event.state.value}")

    async def get(self, timeout: Optional[float] = None) -> Optional[StatusEvent]:
        """Next event, or None once closed or on timeout."""
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> list[StatusEvent]:
        """Drain events already queued without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        """Stop receiving events. Iteration ends after queued events drain."""
        if self._closed:
            return
        self._closed = True
        self._stream._unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StatusEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class EventStream:
    """Fan-out of status events to any number of subscribers."""

    def __init__(self, history_size: int = 100):
        self._subscribers: list[Subscription] = []
        self._history: deque[StatusEvent] = deque(maxlen=history_size)

    def subscribe(self, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, maxsize=maxsize)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: StatusEvent) -> None:
        self._history.append(event)
        logger.debug(f"Status: {event.state.value} {event.message}")
        for subscription in list(self._subscribers):
            subscription._push(event)

    def emit(
        self,
        state: Union[InitState, OperationStage],
        message: str = "",
        operation: Optional[str] = None,
        error: Optional[str] = None,
        **details: Any,
    ) -> StatusEvent:
        """Build and publish an event."""
        event = StatusEvent(
            state=state,
            message=message,
            operation=operation,
            details=details,
            error=error,
        )
        self.publish(event)
        return event

    @property
    def history(self) -> list[StatusEvent]:
        return list(self._history)

    @property
    def latest(self) -> Optional[StatusEvent]:
        return self._history[-1] if self._history else None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
