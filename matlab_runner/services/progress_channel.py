from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Optional

from ..config import config
from ..models import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressChannelClosed(RuntimeError):
    pass


def format_sse_frame(payload: Dict[str, Any]) -> str:
    encoded = json.dumps(payload, ensure_ascii=False)
    return f"data: {encoded}\n\n"


class ProgressChannel:
    """
    Ordered push channel from one run to one observer.

    Writes are synchronous and FIFO. The channel closes itself after the
    terminal event; a second terminal write raises `ProgressChannelClosed`
    and late non-terminal writes are dropped.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._pending: Deque[ProgressEvent] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False
        self._terminal_delivered = False
        self._disconnected = False
        self._on_disconnect: Optional[Callable[[], None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_delivered(self) -> bool:
        return self._terminal_delivered

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def set_disconnect_handler(self, handler: Callable[[], None]) -> None:
        self._on_disconnect = handler

    def publish(self, event: ProgressEvent) -> bool:
        if self._closed:
            if event.terminal:
                raise ProgressChannelClosed(f"terminal event already published for run {self.run_id}")
            logger.debug("[%s] dropping event after close: %s", self.run_id, event.message)
            return False
        if event.terminal:
            self._closed = True
        self._pending.append(event)
        self._wakeup.set()
        return True

    async def iter_events(
        self,
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval_sec: float | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Yield events until the terminal one.

        The observer counts as gone when `is_disconnected` says so or when the
        consumer stops iterating before the terminal event.
        """
        interval = float(poll_interval_sec if poll_interval_sec is not None else config.RUN.DISCONNECT_POLL_SEC)
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    return
                if not self._pending:
                    self._wakeup.clear()
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
                    except asyncio.TimeoutError:
                        pass
                    continue
                event = self._pending.popleft()
                if event.terminal:
                    self._terminal_delivered = True
                yield event
                if event.terminal:
                    return
        finally:
            if not self._terminal_delivered:
                self._notify_disconnect()

    async def iter_sse_frames(
        self,
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval_sec: float | None = None,
    ) -> AsyncIterator[str]:
        events = self.iter_events(
            is_disconnected=is_disconnected,
            poll_interval_sec=poll_interval_sec,
        )
        try:
            async for event in events:
                yield format_sse_frame(event.to_wire())
        finally:
            await events.aclose()

    def _notify_disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        logger.info("[%s] observer disconnected before the terminal event", self.run_id)
        handler = self._on_disconnect
        if handler is None:
            return
        try:
            handler()
        except Exception:
            logger.warning("[%s] disconnect handler failed", self.run_id, exc_info=True)
