"""
scheduler.py – Periodic refresh of time-based codes.

RefreshScheduler ticks at a fixed interval on a daemon thread.  Every tick
asks the dispatcher to run one refresh pass (normally on the UI thread);
the pass recomputes the code of each time-based authenticator and publishes
the batch to all subscribers.

A tick that fires while the previous pass is still pending is skipped, not
queued: at most one refresh pass is ever in flight.  stop() guarantees that
no batch is published after it returns.
"""

import logging
import threading
import time
from typing import Callable, Iterable, List, NamedTuple, Optional

import otp
from models import Authenticator, GeneratedCode

logger = logging.getLogger("OtpAuthenticator")

IDLE = "Idle"
TICKING = "Ticking"


class CodeUpdate(NamedTuple):
    secret: str
    code: GeneratedCode


Subscriber = Callable[[List[CodeUpdate]], None]
Dispatcher = Callable[[Callable[[], None]], None]


def run_inline(callback: Callable[[], None]) -> None:
    """Dispatcher that runs the callback immediately on the calling thread."""
    callback()


class RefreshScheduler:
    """
    Recomputes time-based codes at a fixed cadence.

    Parameters
    ----------
    source : callable
        Returns the authenticators currently tracked (called once per pass,
        on the dispatcher's thread).
    interval : float
        Seconds between two ticks.
    dispatcher : callable
        Receives a zero-argument callback and must eventually run it; a UI
        passes its "invoke on UI thread" function here.
    clock : callable
        Returns the current Unix time; replaced in tests.

    Attributes
    ----------
    skipped_ticks : int
        Ticks rejected because the previous pass was still pending.
    completed_ticks : int
        Passes whose batch was published.
    """

    def __init__(
        self,
        source: Callable[[], Iterable[Authenticator]],
        interval: float = 1.0,
        dispatcher: Dispatcher = run_inline,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._source = source
        self._dispatch = dispatcher
        self._clock = clock

        # Held from the moment a pass is dispatched until it has finished.
        self._busy = threading.Lock()
        # Serialises publishing against stop(); reentrant so a subscriber may stop us.
        self._publish_lock = threading.RLock()
        self._generation = 0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._subscribers: List[Subscriber] = []
        self._subscribers_lock = threading.Lock()

        self.skipped_ticks = 0
        self.completed_ticks = 0

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register *subscriber*; return a callable that unregisters it."""
        with self._subscribers_lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return TICKING if self._busy.locked() else IDLE

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start ticking every *interval* seconds.  Calling it twice is harmless."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="refresh-scheduler", daemon=True)
        self._thread.start()
        logger.info("Refresh scheduler started (interval %.2fs)", self.interval)

    def stop(self) -> None:
        """
        Stop ticking.

        After this returns no batch is published: the timer thread has
        exited and a pass still waiting on the dispatcher is discarded when
        it finally runs.
        """
        with self._publish_lock:
            self._generation += 1
            self._stop_event.set()

        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        logger.info("Refresh scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Refresh tick failed")

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def tick(self) -> bool:
        """
        Dispatch one refresh pass unless the previous one is still pending.

        Returns True if a pass was dispatched, False if the tick was skipped
        or the scheduler has been stopped.
        """
        if not self._busy.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.debug("Refresh still in progress; tick skipped")
            return False

        # Checked together with the generation so a concurrent stop() either
        # happens before this tick or invalidates it.
        with self._publish_lock:
            if self._stop_event.is_set():
                self._busy.release()
                return False
            generation = self._generation

        try:
            self._dispatch(lambda: self._refresh(generation))
        except Exception:
            # The pass never got scheduled, so nobody else will release the flag.
            self._busy.release()
            raise
        return True

    def _refresh(self, generation: int) -> None:
        try:
            now = self._clock()
            updates: List[CodeUpdate] = []
            for auth in list(self._source()):
                if not auth.is_time_based:
                    continue
                try:
                    updates.append(CodeUpdate(auth.secret, otp.compute_for(auth, now)))
                except Exception:
                    # One bad record must not stop the others from refreshing.
                    logger.exception("Failed to refresh code for %s", auth.issuer)

            with self._publish_lock:
                if generation != self._generation:
                    logger.debug("Scheduler stopped; discarding refresh results")
                    return
                with self._subscribers_lock:
                    subscribers = list(self._subscribers)
                for subscriber in subscribers:
                    try:
                        subscriber(updates)
                    except Exception:
                        logger.exception("Code subscriber raised")
                self.completed_ticks += 1
        finally:
            self._busy.release()
