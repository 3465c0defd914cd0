from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

log = logging.getLogger("filebundle.core.concurrency")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry loop: ``max_attempts`` tries, ``backoff_seconds`` between them.

    ``sleep`` is injectable so tests can run contention scenarios without
    waiting on a real clock.
    """

    max_attempts: int = 5
    backoff_seconds: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers 1..max_attempts, sleeping before every retry."""
        for n in range(1, max(1, int(self.max_attempts)) + 1):
            if n > 1 and self.backoff_seconds > 0:
                self.sleep(self.backoff_seconds)
            yield n


# Messages understood by FlushWorker
TICK = "tick"
RESET = "reset"
STOP = "stop"


class FlushWorker:
    """Background flush loop driven by a message queue.

    An APScheduler interval job posts a TICK every ``interval`` seconds; a
    single consumer thread drains the queue. All countdown state is owned by
    the consumer; other threads only post messages, so a foreground flush
    resets the countdown with ``reset_flush_frequency()`` instead of writing
    the counter directly.

    Every ``flush_frequency``-th tick calls ``flush``; every
    ``full_flush_frequency``-th flush also calls ``full_flush``.
    ``flush``/``full_flush`` exceptions are handled by ``on_error`` so a
    failing attempt never ends the loop.
    """

    def __init__(
        self,
        *,
        name: str,
        flush: Callable[[], None],
        full_flush: Callable[[], None],
        on_error: Callable[[BaseException], None],
        interval: float = 60.0,
        flush_frequency: int = 5,
        full_flush_frequency: int = 12,
    ):
        self.name = name
        self.interval = float(interval)
        self.flush_frequency = int(flush_frequency)
        self.full_flush_frequency = int(full_flush_frequency)
        self._flush = flush
        self._full_flush = full_flush
        self._on_error = on_error
        self._inbox: "queue.Queue[str]" = queue.Queue()
        self._thread: threading.Thread | None = None
        self._sched: BackgroundScheduler | None = None
        self.flush_countdown = self.flush_frequency
        self.full_flush_countdown = self.full_flush_frequency

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> "FlushWorker":
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        sched = BackgroundScheduler(timezone="UTC")
        sched.add_job(
            func=self.tick,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.name,
            max_instances=1,
            coalesce=True,
        )
        sched.start()
        self._sched = sched
        log.debug("%s ticking every %.3fs", self.name, self.interval)
        return self

    def shut_down(self, timeout: float | None = 5.0) -> None:
        # no new ticks once this returns
        sched, self._sched = self._sched, None
        if sched is not None:
            sched.shutdown(wait=True)
        self._inbox.put(STOP)
        th = self._thread
        if th is not None and th is not threading.current_thread():
            th.join(timeout)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._sched is not None and self._sched.running

    # -- messages ----------------------------------------------------------

    def tick(self) -> None:
        self._inbox.put(TICK)

    def reset_flush_frequency(self) -> None:
        self._inbox.put(RESET)

    def _run(self) -> None:
        while True:
            msg = self._inbox.get()
            if msg == STOP:
                break
            self.process(msg)

    def process(self, msg: str) -> None:
        """Handle one message synchronously on the calling thread."""
        if msg == RESET:
            self.flush_countdown = self.flush_frequency
            return
        if msg != TICK:
            log.debug("ignoring unknown flush worker message %r", msg)
            return

        if self.flush_countdown > 1:
            self.flush_countdown -= 1
            return

        self.flush_countdown = self.flush_frequency
        try:
            self._flush()
            if self.full_flush_countdown > 1:
                self.full_flush_countdown -= 1
            else:
                self._full_flush()
                self.full_flush_countdown = self.full_flush_frequency
        except Exception as e:
            self._on_error(e)
