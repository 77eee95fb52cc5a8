"""Timed collection window: Idle -> Armed -> Closed."""

from __future__ import annotations

import enum
import functools
import math
import threading
import time
from typing import Callable, List, Optional, Set, Union

from rssiwatch.ingest.decoder import decode_message, extract_samples
from rssiwatch.util.logging import get_logger
from rssiwatch.window.types import CollectionContext, Sample, WindowProgress, WindowResult

logger = get_logger(__name__)


class WindowState(str, enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    CLOSED = "closed"


class WindowBusyError(RuntimeError):
    """Raised when arming while another window is still collecting."""


class WindowController:
    """Own the active context and sample buffer for one window at a time.

    ``ingest`` is safe to call from any number of message-delivery threads.
    Payload decoding happens before the lock is taken, so a delivery thread
    only holds the lock for the filter-and-append step. Expiry takes the same
    lock, which gives a total order between closing and in-flight appends:
    an append that got the lock first is part of the result, anything after
    is rejected.
    """

    def __init__(
        self,
        duration_s: float = 60.0,
        *,
        clock: Callable[[], float] = time.time,
        timer_factory: Callable[[float, Callable[[], None]], threading.Timer] = threading.Timer,
    ) -> None:
        duration_s = float(duration_s)
        if not math.isfinite(duration_s) or duration_s <= 0:
            raise ValueError("duration_s must be positive")
        self.duration_s = duration_s
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._state = WindowState.IDLE
        self._context: Optional[CollectionContext] = None
        self._buffer: List[Sample] = []
        self._observed: Set[str] = set()
        self._started_at = 0.0
        self._rejected = 0
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._done = threading.Event()
        self._result: Optional[WindowResult] = None

    # -----------------
    # Public interface
    # -----------------

    @property
    def state(self) -> WindowState:
        with self._lock:
            return self._state

    def arm(self, context: CollectionContext) -> None:
        with self._lock:
            if self._state is WindowState.ARMED:
                raise WindowBusyError("A collection window is already open")
            self._context = context
            self._buffer = []
            self._observed = set()
            self._rejected = 0
            self._result = None
            self._started_at = self._clock()
            self._done.clear()
            self._state = WindowState.ARMED
            self._generation += 1
            timer = self._timer_factory(self.duration_s, functools.partial(self._expire, self._generation))
            timer.daemon = True
            self._timer = timer
        timer.start()
        logger.debug("window armed for %.1fs: %s", self.duration_s, context)

    def ingest(self, payload: Union[bytes, bytearray, str]) -> int:
        """Offer one raw bus payload; returns the number of samples buffered."""

        message = decode_message(payload)
        observed_at = self._clock()
        with self._lock:
            if self._state is not WindowState.ARMED:
                self._rejected += 1
                return 0
            samples, observed = extract_samples(message, self._context, observed_at)
            self._buffer.extend(samples)
            self._observed.update(observed)
            if not samples and not observed:
                self._rejected += 1
            return len(samples)

    def wait(self, timeout: Optional[float] = None) -> Optional[WindowResult]:
        """Block until the window closes or is aborted; None on timeout."""

        if not self._done.wait(timeout):
            return None
        with self._lock:
            return self._result

    def progress(self) -> WindowProgress:
        with self._lock:
            elapsed = self._clock() - self._started_at if self._state is WindowState.ARMED else 0.0
            return WindowProgress(
                state=self._state.value,
                elapsed_s=max(0.0, elapsed),
                duration_s=self.duration_s,
                sample_count=len(self._buffer),
                source_count=len(self._observed),
                sources=frozenset(self._observed),
            )

    def abort(self) -> None:
        """Cancel the open window, dropping its samples. No-op when not armed."""

        with self._lock:
            if self._state is not WindowState.ARMED:
                return
            timer = self._timer
            self._timer = None
            assert self._context is not None
            self._result = WindowResult(
                context=self._context,
                samples=(),
                observed_sources=frozenset(),
                started_at=self._started_at,
                closed_at=self._clock(),
                rejected_payloads=self._rejected,
                aborted=True,
            )
            self._reset_locked(WindowState.IDLE)
        if timer is not None:
            timer.cancel()
        self._done.set()
        logger.info("window aborted; buffered samples discarded")

    # -----------------
    # Internal helpers
    # -----------------

    def _expire(self, generation: int) -> None:
        with self._lock:
            # A timer that fired while abort() held the lock must not close a later window.
            if self._state is not WindowState.ARMED or generation != self._generation:
                return
            assert self._context is not None
            self._result = WindowResult(
                context=self._context,
                samples=tuple(self._buffer),
                observed_sources=frozenset(self._observed),
                started_at=self._started_at,
                closed_at=self._clock(),
                rejected_payloads=self._rejected,
            )
            self._timer = None
            self._reset_locked(WindowState.CLOSED)
            result = self._result
        self._done.set()
        logger.debug(
            "window closed: %d samples from %d sources (%d payloads discarded)",
            result.sample_count,
            len(result.observed_sources),
            result.rejected_payloads,
        )

    def _reset_locked(self, state: WindowState) -> None:
        self._state = state
        self._context = None
        self._buffer = []
        self._observed = set()
