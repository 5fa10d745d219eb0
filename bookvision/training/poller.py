import logging
import threading
from typing import Callable, Dict, Optional

from ..errors import RemoteError
from ..schemas import TrainingJob

logger = logging.getLogger(__name__)

Tick = Callable[[str], Optional[TrainingJob]]


class PollScheduler:
    """One background poll thread per job id.

    ``start`` is idempotent per job id. Each loop waits ``interval`` seconds on
    its stop event before every tick and exits once a tick reports a terminal
    job (or no job at all).
    """

    def __init__(self, interval: float = 5.0):
        self.interval = interval
        self._tasks: Dict[str, threading.Thread] = {}
        self._stops: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def is_polling(self, job_id: str) -> bool:
        with self._lock:
            t = self._tasks.get(job_id)
            return t is not None and t.is_alive()

    def active(self):
        with self._lock:
            return [jid for jid, t in self._tasks.items() if t.is_alive()]

    def start(self, job_id: str, tick: Tick) -> bool:
        with self._lock:
            existing = self._tasks.get(job_id)
            if existing is not None and existing.is_alive():
                logger.info("Poll task for %s already running", job_id)
                return False
            stop = threading.Event()
            t = threading.Thread(target=self._run, args=(job_id, tick, stop), name=f"poll-{job_id}", daemon=True)
            self._tasks[job_id] = t
            self._stops[job_id] = stop
        t.start()
        logger.info("Started polling %s every %.1fs", job_id, self.interval)
        return True

    def stop(self, job_id: str):
        with self._lock:
            stop = self._stops.get(job_id)
        if stop is not None:
            stop.set()

    def stop_all(self):
        with self._lock:
            stops = list(self._stops.values())
        for s in stops:
            s.set()

    def join(self, job_id: str, timeout: Optional[float] = None):
        with self._lock:
            t = self._tasks.get(job_id)
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    def _run(self, job_id: str, tick: Tick, stop: threading.Event):
        try:
            while not stop.wait(self.interval):
                try:
                    job = tick(job_id)
                except RemoteError as e:
                    logger.warning("Poll tick for %s failed: %s", job_id, e)
                    continue
                except Exception:  # noqa: BLE001
                    logger.exception("Unexpected error polling %s", job_id)
                    continue
                if job is None or job.is_terminal:
                    break
        finally:
            with self._lock:
                if self._tasks.get(job_id) is threading.current_thread():
                    del self._tasks[job_id]
                    self._stops.pop(job_id, None)
            logger.info("Stopped polling %s", job_id)
