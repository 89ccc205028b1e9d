import logging
import threading
from datetime import datetime

from croniter import croniter

logger = logging.getLogger(__name__)


def next_fire_time(schedule, base):
    return croniter(schedule, base).get_next(datetime)


class CronTrigger:
    """Calls ``callback`` every time ``schedule`` comes due, until stopped.

    Each firing runs the callback on its own thread, so a slow run never
    pushes back the next tick. ``stop()`` takes effect immediately.
    """

    def __init__(self, schedule, callback, name=None, clock=datetime.now):
        self.schedule = schedule
        self.callback = callback
        self.name = name or schedule
        self.clock = clock
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"cron-{self.name}", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _loop(self):
        last_due = None
        while not self._stop.is_set():
            now = self.clock()
            # Waking a little early must not fire the same tick twice
            due = next_fire_time(self.schedule, max(now, last_due) if last_due else now)
            last_due = due
            if self._stop.wait(max((due - now).total_seconds(), 0)):
                return
            threading.Thread(target=self._fire, name=f"cron-run-{self.name}", daemon=True).start()

    def _fire(self):
        try:
            self.callback()
        except Exception:
            logger.exception("Scheduled run of %s failed", self.name)
