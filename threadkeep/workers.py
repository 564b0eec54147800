"""
Background processing of the pending work queue.

One daemon thread drains embedding and summarization jobs so that
mutating calls return as soon as their store write commits.
"""

import logging
import threading
from typing import Callable, Optional

from .errors import log_exception

logger = logging.getLogger(__name__)


class BackgroundWorker:
    """
    Daemon thread that repeatedly calls ``process`` until stopped.

    ``process`` returns the number of items it handled; when it handles
    none, the worker sleeps until ``notify()`` or ``poll_interval``.
    """

    def __init__(
        self,
        process: Callable[[], int],
        *,
        poll_interval: float = 2.0,
        name: str = "threadkeep-worker",
    ):
        self._process = process
        self._poll_interval = poll_interval
        self._name = name
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.debug("Started %s", self._name)

    def notify(self) -> None:
        """Wake the worker: new work was enqueued."""
        self._wake.set()

    def stop(self, timeout: float = 10.0) -> bool:
        """
        Ask the loop to exit after the current batch.

        Returns:
            True if the thread exited within ``timeout``
        """
        self._stopping.set()
        self._wake.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("%s did not stop within %.1fs", self._name, timeout)
            return False
        self._thread = None
        return True

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.clear()
            try:
                processed = self._process()
            except Exception as e:
                logger.error("Background processing failed: %s", e)
                log_exception(e, "background worker")
                processed = 0
            if not processed:
                self._wake.wait(self._poll_interval)
