"""Connectivity signal and the background monitor that feeds it."""
import threading
from typing import Callable, List, Optional

from formqueue import settings
from formqueue.logging_conf import logger


class ConnectivitySignal:
    """Online/offline flag with transition listeners."""

    def __init__(self, online: bool = False):
        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[Callable[[bool], None]] = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        """Call `listener(online)` on every transition. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        with self._lock:
            if online == self._online:
                return
            self._online = online
            listeners = list(self._listeners)

        logger.info("Connection restored" if online else "Connection lost")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)


class ConnectivityMonitor:
    """Probes the remote endpoint on an interval and updates the signal."""

    def __init__(self, signal: ConnectivitySignal, probe: Callable[[], bool], interval: Optional[int] = None):
        self.signal = signal
        self.probe = probe
        self.interval = interval or settings.CONNECTIVITY_CHECK_INTERVAL
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()

    def start(self):
        """Start the monitor in a background thread."""
        if self.running:
            logger.warning("Connectivity monitor is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name="connectivity-monitor", daemon=True)
        self.thread.start()
        logger.info(f"Connectivity monitor started (interval: {self.interval}s)")

    def stop(self):
        """Stop the monitor."""
        if not self.running:
            return

        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Connectivity monitor stopped")

    def check_once(self) -> bool:
        try:
            online = bool(self.probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        self.signal.set_online(online)
        return online

    def _run(self):
        while self.running:
            self.check_once()
            self._stop_event.wait(self.interval)
