"""Bounded hand-off channel between job producers and the scheduler."""

from __future__ import annotations

import logging
import queue
import threading
from enum import Enum

from vega_dispatch.errors import ChannelClosedError
from vega_dispatch.models import Calculation

logger = logging.getLogger(__name__)


class OverflowPolicy(str, Enum):
    """What a producer does when the channel is full."""

    BLOCK = "block"
    DROP = "drop"


class CalculationChannel:
    """Bounded FIFO of freshly built calculations waiting for a worker.

    With ``OverflowPolicy.BLOCK`` a full channel stalls the producer until the
    scheduler takes an item, the channel is closed, or ``stop_event`` fires
    (the last two raise ``ChannelClosedError``). With ``OverflowPolicy.DROP``
    a full channel discards the item and ``send`` returns False.
    """

    def __init__(
        self,
        capacity: int = 1,
        *,
        overflow: OverflowPolicy = OverflowPolicy.BLOCK,
        stop_event: threading.Event | None = None,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be >= 1.")
        self.capacity = capacity
        self.overflow = overflow
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = stop_event or threading.Event()
        self._items: queue.Queue[Calculation] = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self._timers: set[threading.Timer] = set()
        self._timers_lock = threading.Lock()

    def __len__(self) -> int:
        return self._items.qsize()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, calculation: Calculation) -> bool:
        """Hand one calculation to the scheduler; False if it was dropped."""

        if self.overflow == OverflowPolicy.DROP:
            self._ensure_open(calculation)
            try:
                self._items.put_nowait(calculation)
            except queue.Full:
                logger.warning(
                    "Scheduling channel full (capacity=%d), dropping %s",
                    self.capacity,
                    calculation.meta.name,
                )
                return False
            return True

        while True:
            self._ensure_open(calculation)
            try:
                self._items.put(calculation, timeout=self.poll_interval_seconds)
            except queue.Full:
                continue
            return True

    def send_later(self, calculation: Calculation, delay_seconds: float) -> None:
        """Offer ``calculation`` again after a delay without blocking the caller."""

        timer: threading.Timer

        def _fire() -> None:
            with self._timers_lock:
                self._timers.discard(timer)
            if self.closed:
                return
            try:
                self._items.put_nowait(calculation)
            except queue.Full:
                logger.warning(
                    "Scheduling channel still full, dropping delayed %s",
                    calculation.meta.name,
                )

        timer = threading.Timer(delay_seconds, _fire)
        timer.daemon = True
        with self._timers_lock:
            self._timers.add(timer)
        timer.start()

    def receive(self, timeout: float | None = None) -> Calculation | None:
        try:
            return self._items.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        """Stop accepting calculations; pending delayed offers are cancelled."""

        self._closed.set()
        with self._timers_lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _ensure_open(self, calculation: Calculation) -> None:
        if self._closed.is_set() or self._stop_event.is_set():
            raise ChannelClosedError(
                f"Scheduling channel closed, cannot hand off {calculation.meta.name}",
            )
