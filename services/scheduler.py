from __future__ import annotations
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from functools import lru_cache
from threading import Event, Lock, Thread
from typing import Optional

from services.scanner import ScanReport, Scanner, build_default_scanner
from settings import get_settings

logger = logging.getLogger(__name__)


class ScanScheduler:
    """Runs ``Scanner.scan_all`` periodically, one cycle at a time."""

    def __init__(self, scanner: Scanner, interval_seconds: float = 600) -> None:
        self.scanner = scanner
        self.interval_seconds = interval_seconds
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan")
        self._future: Optional[Future[ScanReport]] = None
        self._future_lock = Lock()
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Scan once immediately, then on every interval tick."""
        if self.running:
            return
        self._stop.clear()
        self.trigger()
        self._thread = Thread(target=self._loop, name="scan-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scan scheduler started", extra={"duration": f"{self.interval_seconds}s"})

    def trigger(self) -> Optional[Future[ScanReport]]:
        """Submit a scan unless one is still in flight."""
        with self._future_lock:
            if self._future is not None and not self._future.done():
                logger.info("Previous scan still running; skipping tick")
                return None
            self._future = self.executor.submit(self._run_guarded)
            return self._future

    def run_once(self) -> ScanReport:
        """Scan synchronously; an in-flight cycle is awaited instead of doubled."""
        with self._future_lock:
            if self._future is None or self._future.done():
                self._future = self.executor.submit(self._run_guarded)
            future = self._future
        return future.result()

    def stop(self) -> None:
        """Stop ticking and wait for the in-flight scan to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.executor.shutdown(wait=True)
        logger.info("Scan scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.trigger()

    def _run_guarded(self) -> ScanReport:
        try:
            return self.scanner.scan_all()
        except Exception as exc:  # noqa: BLE001 - ingestion errors never escape the scheduler
            logger.exception("Scan cycle failed", extra={"reason": str(exc)})
            return ScanReport(errors=[str(exc)])


@lru_cache
def build_default_scheduler() -> ScanScheduler:
    settings = get_settings()
    return ScanScheduler(
        scanner=build_default_scanner(),
        interval_seconds=settings.scan_interval_seconds,
    )
